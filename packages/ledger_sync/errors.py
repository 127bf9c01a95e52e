"""Exception hierarchy for the sync pipeline.

Every error a caller is expected to handle derives from ``LedgerSyncError``.
The HTTP layer maps them to status codes via ``http_status``; database errors
are not wrapped and surface as-is.
"""

from __future__ import annotations


class LedgerSyncError(Exception):
    """Base class for pipeline errors."""

    http_status: int = 500


class InvalidSyncRequestError(LedgerSyncError):
    http_status = 400


class BankAccountNotFoundError(LedgerSyncError):
    http_status = 404

    def __init__(self, user_id: str, bank_account_id: str) -> None:
        super().__init__("Bank account not found")
        self.user_id = user_id
        self.bank_account_id = bank_account_id


class MissingAccessTokenError(LedgerSyncError):
    http_status = 400

    def __init__(self, bank_account_id: str) -> None:
        super().__init__("No access token found for this bank account")
        self.bank_account_id = bank_account_id


class SyncInProgressError(LedgerSyncError):
    http_status = 409

    def __init__(self, lease_key: str) -> None:
        super().__init__("A sync is already in progress for this bank account")
        self.lease_key = lease_key


class SyncCancelledError(LedgerSyncError):
    """Raised when a run observes its cancellation token between pages."""


class ProviderError(LedgerSyncError):
    """An error reported by (or while talking to) the bank-data provider.

    ``transient`` marks errors worth retrying: rate limits, provider-side
    5xx, ``PRODUCT_NOT_READY`` and network timeouts.
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.error_code = error_code
        self.status_code = status_code
        self.transient = transient

    def __str__(self) -> str:
        code = f" [{self.error_code}]" if self.error_code else ""
        return f"{self.message}{code}"


__all__ = [
    "BankAccountNotFoundError",
    "InvalidSyncRequestError",
    "LedgerSyncError",
    "MissingAccessTokenError",
    "ProviderError",
    "SyncCancelledError",
    "SyncInProgressError",
]
