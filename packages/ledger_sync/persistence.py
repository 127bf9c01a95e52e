# ruff: noqa: I001
"""Persistence adapter over the ledger database.

Functions take an open ``Session`` and never commit; ``LedgerStore`` wraps
them in short ``session_scope`` transactions for the sync orchestrator, which
needs each provider page (with its cursor advance) to be durable on its own.

Scope:
- Merge-upsert canonical transactions keyed by
  ``(user_id, bank_account_id, provider_transaction_id)``.
- Delete transactions the provider reports as removed.
- Read and write bank accounts and their sync state.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ledger_db.client import session_scope, upsert_statement
from ledger_db.models.ledger import BankAccount, LedgerTransaction

from .hierarchy import CategoryHierarchy
from .logging_setup import get_logger
from .models import BankAccountRecord, CanonicalTransaction, ProviderCategoryHint, SyncState
from .rules import RuleContext, load_rule_context

_logger = get_logger("ledger_sync.persistence")

T = TypeVar("T")

_UNSET: Any = object()


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError("chunk size must be a positive integer")
    for start in range(0, len(items), size):
        yield items[start : start + size]


# ---- Transactions ------------------------------------------------------------


def _tx_values(tx: CanonicalTransaction, now: datetime) -> dict[str, Any]:
    h = tx.category_hierarchy
    return {
        "user_id": tx.user_id,
        "bank_account_id": tx.bank_account_id,
        "provider_transaction_id": tx.provider_transaction_id,
        "provider_account_id": tx.provider_account_id,
        "date": tx.date,
        "description": tx.description,
        "merchant_name": tx.merchant_name,
        "amount": tx.amount,
        "category_l0": h.l0,
        "category_l1": h.l1,
        "category_l2": h.l2,
        "category_l3": h.l3,
        "cost_center": tx.cost_center,
        "confidence": float(tx.confidence),
        "review_status": tx.review_status,
        "category_source": tx.category_source,
        "explanation": tx.explanation,
        "pending": tx.pending,
        "provider_category_hint": (
            None if tx.provider_category_hint.is_empty() else tx.provider_category_hint.as_dict()
        ),
        "raw_record": tx.raw,
        "last_updated_at": now,
    }


_MERGE_COLUMNS: tuple[str, ...] = (
    "provider_account_id",
    "date",
    "description",
    "merchant_name",
    "amount",
    "category_l0",
    "category_l1",
    "category_l2",
    "category_l3",
    "cost_center",
    "confidence",
    "review_status",
    "category_source",
    "explanation",
    "pending",
    "provider_category_hint",
    "raw_record",
    "last_updated_at",
)


def upsert_transactions(
    session: Session,
    transactions: Iterable[CanonicalTransaction],
    *,
    now: datetime | None = None,
) -> int:
    """Insert or merge transactions; re-ingesting an id overwrites in place.

    Duplicate ids inside one call collapse to the last occurrence (a single
    ``INSERT .. ON CONFLICT`` statement cannot touch the same row twice).
    """

    stamp = now or datetime.now(UTC)
    by_key: dict[tuple[str, str, str], dict[str, Any]] = {}
    for tx in transactions:
        key = (tx.user_id, tx.bank_account_id, tx.provider_transaction_id)
        by_key[key] = _tx_values(tx, stamp)
    if not by_key:
        return 0

    stmt = upsert_statement(session, LedgerTransaction).values(list(by_key.values()))
    stmt = stmt.on_conflict_do_update(
        index_elements=[
            LedgerTransaction.user_id,
            LedgerTransaction.bank_account_id,
            LedgerTransaction.provider_transaction_id,
        ],
        set_={col: getattr(stmt.excluded, col) for col in _MERGE_COLUMNS},
    )
    session.execute(stmt)
    return len(by_key)


def delete_transactions(
    session: Session,
    *,
    user_id: str,
    bank_account_id: str,
    provider_transaction_ids: Iterable[str],
) -> int:
    ids = [i for i in dict.fromkeys(provider_transaction_ids) if i]
    if not ids:
        return 0
    result = session.execute(
        delete(LedgerTransaction).where(
            LedgerTransaction.user_id == user_id,
            LedgerTransaction.bank_account_id == bank_account_id,
            LedgerTransaction.provider_transaction_id.in_(ids),
        )
    )
    return int(result.rowcount or 0)


def _row_to_transaction(row: LedgerTransaction) -> CanonicalTransaction:
    hint = row.provider_category_hint or {}
    return CanonicalTransaction(
        provider_transaction_id=row.provider_transaction_id,
        user_id=row.user_id,
        bank_account_id=row.bank_account_id,
        provider_account_id=row.provider_account_id,
        date=row.date,
        description=row.description or "",
        amount=row.amount,
        pending=bool(row.pending),
        merchant_name=row.merchant_name,
        provider_category_hint=ProviderCategoryHint(
            primary=hint.get("primary"),
            detailed=hint.get("detailed"),
            legacy=tuple(hint.get("legacy") or ()),
        ),
        category_hierarchy=CategoryHierarchy(
            row.category_l0, row.category_l1, row.category_l2, row.category_l3
        ),
        cost_center=row.cost_center,
        confidence=float(row.confidence),
        review_status=row.review_status,  # type: ignore[arg-type]
        category_source=row.category_source,  # type: ignore[arg-type]
        explanation=row.explanation,
        raw=row.raw_record,
        last_updated_at=row.last_updated_at,
    )


def list_transactions(
    session: Session,
    *,
    user_id: str,
    bank_account_id: str | None = None,
    review_status: str | None = None,
) -> list[CanonicalTransaction]:
    stmt = select(LedgerTransaction).where(LedgerTransaction.user_id == user_id)
    if bank_account_id is not None:
        stmt = stmt.where(LedgerTransaction.bank_account_id == bank_account_id)
    if review_status is not None:
        stmt = stmt.where(LedgerTransaction.review_status == review_status)
    stmt = stmt.order_by(
        LedgerTransaction.bank_account_id,
        LedgerTransaction.date,
        LedgerTransaction.provider_transaction_id,
    )
    return [_row_to_transaction(r) for r in session.execute(stmt).scalars().all()]


# ---- Bank accounts -----------------------------------------------------------


def _row_to_account(row: BankAccount) -> BankAccountRecord:
    mode = row.sync_mode if row.sync_mode in ("incremental", "full") else None
    return BankAccountRecord(
        user_id=row.user_id,
        bank_account_id=row.id,
        access_token=row.provider_access_token,
        item_id=row.provider_item_id,
        provider_account_id=row.provider_account_id,
        auto_sync_enabled=bool(row.auto_sync_enabled),
        sync_state=SyncState(
            cursor=row.sync_cursor,
            last_sync_at=row.last_sync_at,
            mode=mode,  # type: ignore[arg-type]
        ),
    )


def get_bank_account(
    session: Session, *, user_id: str, bank_account_id: str
) -> BankAccountRecord | None:
    row = session.get(BankAccount, (user_id, bank_account_id))
    return _row_to_account(row) if row is not None else None


def list_accounts_for_item(session: Session, item_id: str) -> list[BankAccountRecord]:
    rows = (
        session.execute(
            select(BankAccount)
            .where(BankAccount.provider_item_id == item_id)
            .order_by(BankAccount.user_id, BankAccount.id)
        )
        .scalars()
        .all()
    )
    return [_row_to_account(r) for r in rows]


def save_bank_account(
    session: Session,
    *,
    user_id: str,
    bank_account_id: str,
    access_token: str | None,
    item_id: str | None = None,
    provider_account_id: str | None = None,
    account_name: str | None = None,
    institution_name: str | None = None,
    auto_sync_enabled: bool = True,
) -> None:
    """Create or update a linked bank account (sync state is left untouched)."""

    now = datetime.now(UTC)
    values = {
        "user_id": user_id,
        "id": bank_account_id,
        "provider_access_token": access_token,
        "provider_item_id": item_id,
        "provider_account_id": provider_account_id,
        "account_name": account_name,
        "institution_name": institution_name,
        "auto_sync_enabled": auto_sync_enabled,
        "historical_data_pending": True,
        "created_at": now,
        "updated_at": now,
    }
    stmt = upsert_statement(session, BankAccount).values(values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[BankAccount.user_id, BankAccount.id],
        set_={
            "provider_access_token": stmt.excluded.provider_access_token,
            "provider_item_id": stmt.excluded.provider_item_id,
            "provider_account_id": stmt.excluded.provider_account_id,
            "account_name": stmt.excluded.account_name,
            "institution_name": stmt.excluded.institution_name,
            "auto_sync_enabled": stmt.excluded.auto_sync_enabled,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)


def save_sync_state(
    session: Session,
    *,
    user_id: str,
    bank_account_id: str,
    cursor: str | None = _UNSET,
    last_sync_at: datetime | None = _UNSET,
    mode: str | None = _UNSET,
    historical_data_pending: bool | None = _UNSET,
) -> None:
    """Update only the sync-state fields that were passed."""

    values: dict[str, Any] = {"updated_at": datetime.now(UTC)}
    if cursor is not _UNSET:
        values["sync_cursor"] = cursor
    if last_sync_at is not _UNSET:
        values["last_sync_at"] = last_sync_at
    if mode is not _UNSET:
        values["sync_mode"] = mode
    if historical_data_pending is not _UNSET:
        values["historical_data_pending"] = bool(historical_data_pending)
    session.execute(
        update(BankAccount)
        .where(BankAccount.user_id == user_id, BankAccount.id == bank_account_id)
        .values(**values)
    )


# ---- Store facade for the orchestrator ----------------------------------------


class LedgerStore:
    """Per-operation transactional access to the ledger database.

    Each method opens its own ``session_scope`` so that a committed batch stays
    committed even if a later step of the same sync run fails.
    """

    def __init__(self, *, database_url: str | None = None) -> None:
        self.database_url = database_url

    def get_account(self, user_id: str, bank_account_id: str) -> BankAccountRecord | None:
        with session_scope(database_url=self.database_url) as s:
            return get_bank_account(s, user_id=user_id, bank_account_id=bank_account_id)

    def accounts_for_item(self, item_id: str) -> list[BankAccountRecord]:
        with session_scope(database_url=self.database_url) as s:
            return list_accounts_for_item(s, item_id)

    def load_rule_context(self, user_id: str) -> RuleContext:
        with session_scope(database_url=self.database_url) as s:
            return load_rule_context(s, user_id)

    def upsert_batch(self, transactions: Sequence[CanonicalTransaction]) -> int:
        with session_scope(database_url=self.database_url) as s:
            return upsert_transactions(s, transactions)

    def commit_page(
        self,
        user_id: str,
        bank_account_id: str,
        *,
        upserts: Sequence[CanonicalTransaction] = (),
        removed_ids: Sequence[str] = (),
        cursor: str | None = _UNSET,
        batch_size: int = 450,
    ) -> tuple[int, int]:
        """Write one provider page in a single transaction.

        Upserts go first, then removals, then the cursor, so a transaction both
        added and removed in the same page ends up deleted. Chunking only bounds
        statement size; nothing is visible until the whole page commits.
        Returns ``(upserted, deleted)``.
        """

        upserted = 0
        deleted = 0
        with session_scope(database_url=self.database_url) as s:
            for batch in chunked(upserts, batch_size):
                upserted += upsert_transactions(s, batch)
            for ids in chunked(removed_ids, batch_size):
                deleted += delete_transactions(
                    s,
                    user_id=user_id,
                    bank_account_id=bank_account_id,
                    provider_transaction_ids=ids,
                )
            if cursor is not _UNSET:
                save_sync_state(
                    s,
                    user_id=user_id,
                    bank_account_id=bank_account_id,
                    cursor=cursor,
                    mode="incremental",
                )
        return upserted, deleted

    def save_cursor(
        self,
        user_id: str,
        bank_account_id: str,
        cursor: str | None,
        *,
        last_sync_at: datetime | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {"cursor": cursor, "mode": "incremental"}
        if last_sync_at is not None:
            kwargs["last_sync_at"] = last_sync_at
        with session_scope(database_url=self.database_url) as s:
            save_sync_state(s, user_id=user_id, bank_account_id=bank_account_id, **kwargs)

    def finish_backfill(self, user_id: str, bank_account_id: str, *, at: datetime) -> None:
        with session_scope(database_url=self.database_url) as s:
            save_sync_state(
                s,
                user_id=user_id,
                bank_account_id=bank_account_id,
                cursor=None,
                last_sync_at=at,
                mode="full",
                historical_data_pending=False,
            )

    def needs_review(self, user_id: str) -> list[CanonicalTransaction]:
        with session_scope(database_url=self.database_url) as s:
            return list_transactions(s, user_id=user_id, review_status="needs-review")


__all__ = [
    "LedgerStore",
    "chunked",
    "delete_transactions",
    "get_bank_account",
    "list_accounts_for_item",
    "list_transactions",
    "save_bank_account",
    "save_sync_state",
    "upsert_transactions",
]
