"""Bank-data provider client (Plaid REST over ``httpx``).

Only the two transaction endpoints the sync needs are wrapped:

- ``/transactions/get``  - offset-paginated history for a date range
- ``/transactions/sync`` - cursor-based deltas (added / modified / removed)

Provider errors are raised as ``ProviderError`` carrying the provider's
``error_type``/``error_code`` and a ``transient`` flag the orchestrator uses
to decide on retries.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

import httpx

from .config import Settings
from .errors import ProviderError
from .logging_setup import get_logger

_logger = get_logger("ledger_sync.plaid_client")

MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"

_TRANSIENT_CODES: frozenset[str] = frozenset(
    {
        "RATE_LIMIT_EXCEEDED",
        "INTERNAL_SERVER_ERROR",
        "PRODUCT_NOT_READY",
        "PLANNED_MAINTENANCE",
        "INSTITUTION_DOWN",
        "INSTITUTION_NOT_RESPONDING",
    }
)
_TRANSIENT_TYPES: frozenset[str] = frozenset({"RATE_LIMIT_EXCEEDED", "API_ERROR"})


@dataclass(frozen=True, slots=True)
class HistoricalPage:
    transactions: tuple[Mapping[str, Any], ...]
    total_transactions: int


@dataclass(frozen=True, slots=True)
class DeltaPage:
    added: tuple[Mapping[str, Any], ...]
    modified: tuple[Mapping[str, Any], ...]
    removed: tuple[Mapping[str, Any], ...]
    next_cursor: str | None
    has_more: bool


class TransactionsProvider(Protocol):
    def transactions_get(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        account_id: str | None,
        offset: int,
        count: int,
    ) -> HistoricalPage: ...

    def transactions_sync(
        self, access_token: str, *, cursor: str | None, count: int
    ) -> DeltaPage: ...


def is_transient(status_code: int | None, error_type: str | None, error_code: str | None) -> bool:
    if status_code is not None and (status_code == 429 or 500 <= status_code < 600):
        return True
    if error_code and error_code in _TRANSIENT_CODES:
        return True
    return bool(error_type and error_type in _TRANSIENT_TYPES)


def _error_from_response(resp: httpx.Response) -> ProviderError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, Mapping):
        body = {}
    error_type = body.get("error_type")
    error_code = body.get("error_code")
    message = (
        body.get("error_message")
        or body.get("display_message")
        or f"provider request failed with HTTP {resp.status_code}"
    )
    return ProviderError(
        str(message),
        error_type=error_type,
        error_code=error_code,
        status_code=resp.status_code,
        transient=is_transient(resp.status_code, error_type, error_code),
    )


def _records(value: Any) -> tuple[Mapping[str, Any], ...]:
    if not isinstance(value, list):
        return ()
    return tuple(v for v in value if isinstance(v, Mapping))


class PlaidClient:
    """Synchronous Plaid client.

    ``transport`` is passed through to ``httpx.Client`` (tests use
    ``httpx.MockTransport``).
    """

    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: httpx.BaseTransport | None = None
    ) -> PlaidClient:
        if not settings.plaid_client_id or not settings.plaid_secret:
            raise ProviderError(
                "PLAID_CLIENT_ID and PLAID_SECRET must be set", error_type="CONFIGURATION"
            )
        return cls(
            client_id=settings.plaid_client_id,
            secret=settings.plaid_secret,
            base_url=settings.plaid_base_url,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> PlaidClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _post(self, path: str, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        body = {"client_id": self._client_id, "secret": self._secret, **payload}
        try:
            resp = self._http.post(path, json=body)
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"provider request timed out: {path}", error_type="TIMEOUT", transient=True
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"provider transport error: {e}", error_type="TRANSPORT", transient=True
            ) from e
        if resp.status_code >= 400:
            err = _error_from_response(resp)
            _logger.warning(
                "plaid:error path=%s status=%d code=%s transient=%s",
                path,
                resp.status_code,
                err.error_code,
                err.transient,
            )
            raise err
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"provider returned invalid JSON for {path}") from e
        if not isinstance(data, Mapping):
            raise ProviderError(f"provider returned a non-object body for {path}")
        return data

    def transactions_get(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        account_id: str | None,
        offset: int,
        count: int,
    ) -> HistoricalPage:
        options: dict[str, Any] = {"count": count, "offset": offset}
        if account_id:
            options["account_ids"] = [account_id]
        data = self._post(
            "/transactions/get",
            {
                "access_token": access_token,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "options": options,
            },
        )
        transactions = _records(data.get("transactions"))
        try:
            total = int(data.get("total_transactions") or 0)
        except (TypeError, ValueError):
            total = 0
        return HistoricalPage(transactions=transactions, total_transactions=total)

    def transactions_sync(
        self, access_token: str, *, cursor: str | None, count: int
    ) -> DeltaPage:
        payload: dict[str, Any] = {"access_token": access_token, "count": count}
        if cursor:
            payload["cursor"] = cursor
        data = self._post("/transactions/sync", payload)
        next_cursor = data.get("next_cursor")
        return DeltaPage(
            added=_records(data.get("added")),
            modified=_records(data.get("modified")),
            removed=_records(data.get("removed")),
            next_cursor=str(next_cursor) if next_cursor else None,
            has_more=bool(data.get("has_more")),
        )


__all__ = [
    "DeltaPage",
    "HistoricalPage",
    "MUTATION_DURING_PAGINATION",
    "PlaidClient",
    "TransactionsProvider",
    "is_transient",
]
