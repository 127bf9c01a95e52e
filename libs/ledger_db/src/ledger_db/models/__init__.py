"""SQLAlchemy models for the ledger database (accounts, transactions, rules, leases)."""

from .ledger import (
    CATEGORY_SOURCES,
    REVIEW_STATUSES,
    RULE_SOURCES,
    BankAccount,
    Base,
    CategorizationRuleRow,
    LedgerTransaction,
    SyncLease,
)

__all__ = [
    "Base",
    "BankAccount",
    "CategorizationRuleRow",
    "LedgerTransaction",
    "SyncLease",
    "CATEGORY_SOURCES",
    "REVIEW_STATUSES",
    "RULE_SOURCES",
]
