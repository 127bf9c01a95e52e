"""Keyword heuristics on the bank description.

Banks put the nature of a movement in plain words (``ONLINE BANKING TRANSFER``,
``PAYMENT - THANK YOU``, ``INTEREST PAID``). These phrases say more about a
landlord's books than the merchant does, so they are checked after the rule
tables but before the provider's own category guess. Which phrases apply
depends on the direction of the money.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal

from .hierarchy import CategoryHierarchy

_NON_WORD_RE = re.compile(r"[^A-Z0-9]+")

INTERNAL_TRANSFER = CategoryHierarchy("Transfer", "Transfers", "Balance Sheet", "Internal Transfer")
DEBT_PAYMENT = CategoryHierarchy("Liability", "Liabilities", "Balance Sheet", "Loan/Card Payment")
RENT_RECEIVED = CategoryHierarchy(
    "Income", "Rental Income", "Line 3: Rents Received", "Residential/Commercial Rent"
)
SECURITY_DEPOSIT = CategoryHierarchy(
    "Income", "Rental Income", "Line 3: Rents Received", "Security Deposit"
)
INTEREST_EARNED = CategoryHierarchy("Income", "Other Income", "Interest", "Interest Income")
REFUND_CREDIT = CategoryHierarchy("Income", "Uncategorized Income", "Refunds", "Refunds/Credits")
RENT_PAID = CategoryHierarchy("Expense", "Rent & Lease", "Line 19: Other", "Rent Expense")


@dataclass(frozen=True, slots=True)
class KeywordRule:
    phrases: tuple[str, ...]
    hierarchy: CategoryHierarchy
    confidence: float
    unless: tuple[str, ...] = ()


# Checked first whatever the direction.
EITHER_WAY: tuple[KeywordRule, ...] = (
    KeywordRule(
        ("ONLINE BANKING TRANSFER", "TRANSFER TO CHK", "TRANSFER FROM CHK", "INTERNAL TRANSFER"),
        INTERNAL_TRANSFER,
        1.0,
    ),
)

INFLOW: tuple[KeywordRule, ...] = (
    KeywordRule(("RENT", "RENTAL", "LEASE"), RENT_RECEIVED, 1.0),
    KeywordRule(("DEPOSIT",), SECURITY_DEPOSIT, 0.9, unless=("REFUND",)),
    KeywordRule(("INTEREST",), INTEREST_EARNED, 1.0),
    KeywordRule(("REFUND", "RETURN"), REFUND_CREDIT, 0.8),
)

OUTFLOW: tuple[KeywordRule, ...] = (
    KeywordRule(
        ("PAYMENT THANK YOU", "PAYMENT RECEIVED", "CREDIT CARD", "LOAN", "MORTGAGE"),
        DEBT_PAYMENT,
        0.95,
    ),
    KeywordRule(("RENT", "RENTAL", "LEASE"), RENT_PAID, 0.9),
)


@dataclass(frozen=True, slots=True)
class HeuristicMatch:
    hierarchy: CategoryHierarchy
    confidence: float
    phrase: str


def clean_description(description: str) -> str:
    """Upper-case, punctuation to single spaces, padded for whole-word search."""

    return f" {_NON_WORD_RE.sub(' ', (description or '').upper()).strip()} "


def _first_phrase(text: str, phrases: tuple[str, ...]) -> str | None:
    for phrase in phrases:
        if f" {phrase} " in text:
            return phrase
    return None


def match_description(description: str, amount: Decimal) -> HeuristicMatch | None:
    text = clean_description(description)
    if not text.strip():
        return None
    rules = EITHER_WAY + (INFLOW if amount > 0 else OUTFLOW)
    for rule in rules:
        phrase = _first_phrase(text, rule.phrases)
        if phrase is None or _first_phrase(text, rule.unless) is not None:
            continue
        return HeuristicMatch(rule.hierarchy, rule.confidence, phrase)
    return None


__all__ = ["HeuristicMatch", "KeywordRule", "clean_description", "match_description"]
