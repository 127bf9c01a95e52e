from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKeyConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import expression as sa_expr


class Base(DeclarativeBase):
    pass


REVIEW_STATUSES: tuple[str, ...] = ("approved", "needs-review")
RULE_SOURCES: tuple[str, ...] = ("user-correction", "property-derived", "global-vendor-map")
CATEGORY_SOURCES: tuple[str, ...] = RULE_SOURCES + (
    "description-heuristic",
    "provider-hint",
    "fallback",
)


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------
# Linked bank accounts (+ sync state)
# ---------------------------


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    provider_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_item_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    account_name: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)

    # Sync state; written only by the sync orchestrator.
    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    historical_data_pending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.false()
    )
    auto_sync_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.true()
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "sync_mode IS NULL OR sync_mode IN ('incremental', 'full')",
            name="ck_bank_accounts_sync_mode",
        ),
    )


# ---------------------------
# Canonical transactions
# ---------------------------


class LedgerTransaction(Base):
    __tablename__ = "transactions"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    bank_account_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider_transaction_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider_account_id: Mapped[str | None] = mapped_column(String, nullable=True)

    date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Outflows negative, inflows positive.
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    category_l0: Mapped[str] = mapped_column(String, nullable=False)
    category_l1: Mapped[str] = mapped_column(String, nullable=False)
    category_l2: Mapped[str] = mapped_column(String, nullable=False)
    category_l3: Mapped[str] = mapped_column(String, nullable=False)
    cost_center: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    review_status: Mapped[str] = mapped_column(String, nullable=False)
    category_source: Mapped[str] = mapped_column(String, nullable=False)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

    pending: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=sa_expr.false())
    provider_category_hint: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    raw_record: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id", "bank_account_id"],
            ["bank_accounts.user_id", "bank_accounts.id"],
            name="fk_transactions_bank_account",
            ondelete="CASCADE",
        ),
        CheckConstraint(
            _in_list("review_status", REVIEW_STATUSES), name="ck_transactions_review_status"
        ),
        CheckConstraint(
            _in_list("category_source", CATEGORY_SOURCES),
            name="ck_transactions_category_source",
        ),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_transactions_confidence_range"
        ),
        Index("ix_transactions_user_review", "user_id", "review_status"),
    )


# ---------------------------
# Categorization rules
# ---------------------------


class CategorizationRuleRow(Base):
    __tablename__ = "categorization_rules"

    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # NULL for global vendor-map rules.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    match_key: Mapped[str] = mapped_column(Text, nullable=False)
    scope_id: Mapped[str | None] = mapped_column(String, nullable=True)
    category_l0: Mapped[str] = mapped_column(String, nullable=False)
    category_l1: Mapped[str] = mapped_column(String, nullable=False)
    category_l2: Mapped[str] = mapped_column(String, nullable=False)
    category_l3: Mapped[str] = mapped_column(String, nullable=False)
    cost_center: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(_in_list("source", RULE_SOURCES), name="ck_rules_source"),
        CheckConstraint(
            "(source = 'global-vendor-map') = (user_id IS NULL)",
            name="ck_rules_global_has_no_user",
        ),
        Index("ix_rules_user_source", "user_id", "source"),
        Index("ix_rules_scope", "user_id", "scope_id"),
    )


# ---------------------------
# Per-account single-flight leases
# ---------------------------


class SyncLease(Base):
    __tablename__ = "sync_leases"

    lease_key: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
