# ruff: noqa: I001
"""Allow 'description-heuristic' as a transaction category source.

Revision ID: 0002_description_heuristic_source
Revises: 0001_ledger_core
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0002_description_heuristic_source"
down_revision: str | None = "0001_ledger_core"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_SOURCES_BEFORE = (
    "'user-correction', 'property-derived', 'global-vendor-map', 'provider-hint', 'fallback'"
)
_SOURCES_AFTER = (
    "'user-correction', 'property-derived', 'global-vendor-map', "
    "'description-heuristic', 'provider-hint', 'fallback'"
)


def _replace_source_check(sources: str) -> None:
    # SQLite cannot alter a check constraint in place; batch mode rebuilds the table.
    with op.batch_alter_table("transactions") as batch:
        batch.drop_constraint("ck_transactions_category_source", type_="check")
        batch.create_check_constraint(
            "ck_transactions_category_source",
            sa.text(f"category_source IN ({sources})"),
        )


def upgrade() -> None:
    _replace_source_check(_SOURCES_AFTER)


def downgrade() -> None:
    # Rows written by the heuristic have no older equivalent other than the fallback.
    op.execute(
        "UPDATE transactions SET category_source = 'fallback' "
        "WHERE category_source = 'description-heuristic'"
    )
    _replace_source_check(_SOURCES_BEFORE)
