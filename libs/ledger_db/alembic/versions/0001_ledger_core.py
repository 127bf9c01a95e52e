# ruff: noqa: I001
"""Ledger core tables: bank accounts, transactions, categorization rules, leases.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "bank_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider_access_token", sa.Text(), nullable=True),
        sa.Column("provider_item_id", sa.String(), nullable=True),
        sa.Column("provider_account_id", sa.String(), nullable=True),
        sa.Column("account_name", sa.String(), nullable=True),
        sa.Column("institution_name", sa.String(), nullable=True),
        sa.Column("sync_cursor", sa.Text(), nullable=True),
        sa.Column("sync_mode", sa.String(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "historical_data_pending", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("auto_sync_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("user_id", "id"),
        sa.CheckConstraint(
            "sync_mode IS NULL OR sync_mode IN ('incremental', 'full')",
            name="ck_bank_accounts_sync_mode",
        ),
    )
    op.create_index("ix_bank_accounts_provider_item_id", "bank_accounts", ["provider_item_id"])

    op.create_table(
        "transactions",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("bank_account_id", sa.String(), nullable=False),
        sa.Column("provider_transaction_id", sa.String(), nullable=False),
        sa.Column("provider_account_id", sa.String(), nullable=True),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("merchant_name", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("category_l0", sa.String(), nullable=False),
        sa.Column("category_l1", sa.String(), nullable=False),
        sa.Column("category_l2", sa.String(), nullable=False),
        sa.Column("category_l3", sa.String(), nullable=False),
        sa.Column("cost_center", sa.String(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("review_status", sa.String(), nullable=False),
        sa.Column("category_source", sa.String(), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column("pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provider_category_hint", sa.JSON(), nullable=True),
        sa.Column("raw_record", sa.JSON(), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "bank_account_id", "provider_transaction_id"),
        sa.ForeignKeyConstraint(
            ["user_id", "bank_account_id"],
            ["bank_accounts.user_id", "bank_accounts.id"],
            name="fk_transactions_bank_account",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "review_status IN ('approved', 'needs-review')",
            name="ck_transactions_review_status",
        ),
        sa.CheckConstraint(
            "category_source IN ('user-correction', 'property-derived', "
            "'global-vendor-map', 'provider-hint', 'fallback')",
            name="ck_transactions_category_source",
        ),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_transactions_confidence_range"
        ),
    )
    op.create_index("ix_transactions_user_review", "transactions", ["user_id", "review_status"])

    op.create_table(
        "categorization_rules",
        sa.Column("rule_id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("match_key", sa.Text(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=True),
        sa.Column("category_l0", sa.String(), nullable=False),
        sa.Column("category_l1", sa.String(), nullable=False),
        sa.Column("category_l2", sa.String(), nullable=False),
        sa.Column("category_l3", sa.String(), nullable=False),
        sa.Column("cost_center", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "source IN ('user-correction', 'property-derived', 'global-vendor-map')",
            name="ck_rules_source",
        ),
        sa.CheckConstraint(
            "(source = 'global-vendor-map') = (user_id IS NULL)",
            name="ck_rules_global_has_no_user",
        ),
    )
    op.create_index("ix_rules_user_source", "categorization_rules", ["user_id", "source"])
    op.create_index("ix_rules_scope", "categorization_rules", ["user_id", "scope_id"])

    op.create_table(
        "sync_leases",
        sa.Column("lease_key", sa.String(), primary_key=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("sync_leases")
    op.drop_index("ix_rules_scope", table_name="categorization_rules")
    op.drop_index("ix_rules_user_source", table_name="categorization_rules")
    op.drop_table("categorization_rules")
    op.drop_index("ix_transactions_user_review", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_bank_accounts_provider_item_id", table_name="bank_accounts")
    op.drop_table("bank_accounts")
