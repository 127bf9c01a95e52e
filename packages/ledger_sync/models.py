"""Domain records shared across the sync pipeline.

Records are frozen ``dataclass`` instances so that a value handed from the
normalizer to the engine to persistence cannot be mutated along the way.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from .hierarchy import CategoryHierarchy

type ReviewStatus = Literal["approved", "needs-review"]
type RuleSource = Literal["user-correction", "property-derived", "global-vendor-map"]
type CategorySource = Literal[
    "user-correction",
    "property-derived",
    "global-vendor-map",
    "description-heuristic",
    "provider-hint",
    "fallback",
]
type SyncMode = Literal["backfill", "incremental"]


@dataclass(frozen=True, slots=True)
class ProviderCategoryHint:
    """The provider's own category guess for a transaction.

    ``primary``/``detailed`` follow the personal-finance-category taxonomy
    (e.g. ``TRAVEL`` / ``TRAVEL_TAXIS_AND_RIDE_SHARES``); ``legacy`` is the
    older free-text category list (e.g. ``("Travel", "Taxi")``).
    """

    primary: str | None = None
    detailed: str | None = None
    legacy: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.primary or self.detailed or self.legacy)

    def as_dict(self) -> dict[str, Any]:
        return {"primary": self.primary, "detailed": self.detailed, "legacy": list(self.legacy)}


@dataclass(frozen=True, slots=True)
class Categorization:
    hierarchy: CategoryHierarchy
    confidence: float
    source: CategorySource
    review_status: ReviewStatus
    explanation: str
    cost_center: str | None = None


@dataclass(frozen=True, slots=True)
class CanonicalTransaction:
    """A provider transaction in the shape the store keeps.

    ``amount`` follows accounting sign: outflows negative, inflows positive.
    Category fields hold the engine's decision; ``last_updated_at`` is filled
    in by the persistence adapter at write time.
    """

    provider_transaction_id: str
    user_id: str
    bank_account_id: str
    provider_account_id: str | None
    date: date | None
    description: str
    amount: Decimal
    pending: bool = False
    merchant_name: str | None = None
    provider_category_hint: ProviderCategoryHint = field(default_factory=ProviderCategoryHint)
    category_hierarchy: CategoryHierarchy = field(default_factory=CategoryHierarchy)
    cost_center: str | None = None
    confidence: float = 0.0
    review_status: ReviewStatus = "needs-review"
    category_source: CategorySource = "fallback"
    explanation: str | None = None
    raw: dict[str, Any] | None = None
    last_updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class CategorizationRule:
    rule_id: str
    user_id: str | None
    match_key: str
    hierarchy: CategoryHierarchy
    source: RuleSource
    priority: int
    cost_center: str | None = None
    scope_id: str | None = None


@dataclass(frozen=True, slots=True)
class SyncState:
    cursor: str | None = None
    last_sync_at: datetime | None = None
    mode: Literal["incremental", "full"] | None = None


@dataclass(frozen=True, slots=True)
class BankAccountRecord:
    user_id: str
    bank_account_id: str
    access_token: str | None
    item_id: str | None
    provider_account_id: str | None
    auto_sync_enabled: bool
    sync_state: SyncState


@dataclass(frozen=True, slots=True)
class SyncResult:
    mode: SyncMode
    count: int
    pages: int = 0
    removed: int = 0


__all__ = [
    "BankAccountRecord",
    "CanonicalTransaction",
    "Categorization",
    "CategorizationRule",
    "CategorySource",
    "ProviderCategoryHint",
    "ReviewStatus",
    "RuleSource",
    "SyncMode",
    "SyncResult",
    "SyncState",
]
