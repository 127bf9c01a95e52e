"""ledger_db: database library for the ledger sync service (SQLAlchemy/Alembic).

Public exports
--------------
- ``Base`` and ``metadata`` for Alembic autogenerate/targeting
- ORM models in ``ledger_db.models.ledger`` (re-exported for convenience)
- Engine/session helpers in ``ledger_db.client``
"""

from __future__ import annotations

from .models.ledger import (
    BankAccount,
    Base,
    CategorizationRuleRow,
    LedgerTransaction,
    SyncLease,
)

metadata = Base.metadata

__all__ = [
    "Base",
    "metadata",
    "BankAccount",
    "CategorizationRuleRow",
    "LedgerTransaction",
    "SyncLease",
]
