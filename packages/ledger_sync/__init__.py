"""Public interface for the ``ledger_sync`` package.

Bank transaction sync and categorization for landlord bookkeeping. This module
only re-exports the stable import surface; logic lives in the submodules.
"""

from .config import DEFAULT_REVIEW_THRESHOLD, Settings
from .engine import RuleResolutionEngine
from .errors import (
    BankAccountNotFoundError,
    InvalidSyncRequestError,
    LedgerSyncError,
    MissingAccessTokenError,
    ProviderError,
    SyncCancelledError,
    SyncInProgressError,
)
from .hierarchy import CategoryHierarchy, normalize_hierarchy
from .models import (
    CanonicalTransaction,
    Categorization,
    CategorizationRule,
    SyncResult,
    SyncState,
)
from .normalize import normalize_transaction
from .sync import SyncOrchestrator, build_orchestrator

__all__ = [
    # Config
    "DEFAULT_REVIEW_THRESHOLD",
    "Settings",
    # Pipeline
    "RuleResolutionEngine",
    "SyncOrchestrator",
    "build_orchestrator",
    "normalize_hierarchy",
    "normalize_transaction",
    # Models
    "CanonicalTransaction",
    "Categorization",
    "CategorizationRule",
    "CategoryHierarchy",
    "SyncResult",
    "SyncState",
    # Errors
    "BankAccountNotFoundError",
    "InvalidSyncRequestError",
    "LedgerSyncError",
    "MissingAccessTokenError",
    "ProviderError",
    "SyncCancelledError",
    "SyncInProgressError",
]
