"""Four-level category hierarchy.

Every stored transaction and rule carries an ``{l0, l1, l2, l3}`` hierarchy.
``normalize_hierarchy`` is the single validation boundary: whatever shape the
input has (modern mapping, legacy ``primaryCategory``-style mapping, plain
sequence, garbage), it returns a fully populated ``CategoryHierarchy`` whose
L0 belongs to the controlled vocabulary. Downstream code trusts the result.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

L0_VOCABULARY: tuple[str, ...] = (
    "Income",
    "Expense",
    "Asset",
    "Liability",
    "Equity",
    "Transfer",
    "Other",
)
UNCATEGORIZED = "Uncategorized"
_DEFAULT_L0 = "Other"

_L0_BY_LOWER: dict[str, str] = {v.lower(): v for v in L0_VOCABULARY}

_L0_SYNONYMS: dict[str, str] = {
    "incomes": "Income",
    "revenue": "Income",
    "revenues": "Income",
    "expenses": "Expense",
    "operating expense": "Expense",
    "operating expenses": "Expense",
    "assets": "Asset",
    "liabilities": "Liability",
    "owner's equity": "Equity",
    "owners equity": "Equity",
    "transfers": "Transfer",
    "balance sheet transfer": "Transfer",
    "balance sheet transfers": "Transfer",
}

# Checked in order; first containment hit wins.
_L0_SUBSTRINGS: tuple[tuple[str, str], ...] = (
    ("income", "Income"),
    ("expense", "Expense"),
    ("transfer", "Transfer"),
    ("asset", "Asset"),
    ("liabilit", "Liability"),
    ("equity", "Equity"),
)

# Legacy rows put every non-P&L movement under one "Balance Sheet" L0; the
# second level tells which side it belongs to. Checked in order.
_BALANCE_SHEET_L1: tuple[tuple[str, str], ...] = (
    ("liabilit", "Liability"),
    ("loan", "Liability"),
    ("mortgage", "Liability"),
    ("credit card", "Liability"),
    ("asset", "Asset"),
    ("equity", "Equity"),
    ("owner", "Equity"),
)
_BALANCE_SHEET_DEFAULT = "Transfer"

_LEGACY_KEYS: tuple[str, ...] = ("primaryCategory", "secondaryCategory", "subcategory", "details")


@dataclass(frozen=True, slots=True)
class CategoryHierarchy:
    l0: str = _DEFAULT_L0
    l1: str = UNCATEGORIZED
    l2: str = UNCATEGORIZED
    l3: str = UNCATEGORIZED

    def as_dict(self) -> dict[str, str]:
        return {"l0": self.l0, "l1": self.l1, "l2": self.l2, "l3": self.l3}

    def as_tuple(self) -> tuple[str, str, str, str]:
        return (self.l0, self.l1, self.l2, self.l3)


def _level(value: Any) -> str:
    if value is None:
        return UNCATEGORIZED
    try:
        text = value if isinstance(value, str) else str(value)
    except Exception:
        return UNCATEGORIZED
    text = " ".join(text.split())
    return text or UNCATEGORIZED


def normalize_l0(value: Any, l1: Any = None) -> str:
    """Map a free-form top-level label onto the controlled L0 vocabulary.

    ``l1`` is only consulted for the legacy ``"Balance Sheet"`` label.
    """

    raw = _level(value)
    if raw == UNCATEGORIZED:
        return _DEFAULT_L0
    lowered = raw.lower()
    if lowered == "balance sheet":
        return _balance_sheet_l0(l1)
    exact = _L0_BY_LOWER.get(lowered)
    if exact:
        return exact
    synonym = _L0_SYNONYMS.get(lowered)
    if synonym:
        return synonym
    for needle, l0 in _L0_SUBSTRINGS:
        if needle in lowered:
            return l0
    return _DEFAULT_L0


def _balance_sheet_l0(l1: Any) -> str:
    second = _level(l1).lower()
    for needle, l0 in _BALANCE_SHEET_L1:
        if needle in second:
            return l0
    return _BALANCE_SHEET_DEFAULT


def _levels_from(raw: Any) -> tuple[Any, Any, Any, Any]:
    if isinstance(raw, CategoryHierarchy):
        return raw.as_tuple()
    if isinstance(raw, Mapping):
        if any(k in raw for k in ("l0", "l1", "l2", "l3")):
            return (raw.get("l0"), raw.get("l1"), raw.get("l2"), raw.get("l3"))
        if any(k in raw for k in _LEGACY_KEYS):
            return tuple(raw.get(k) for k in _LEGACY_KEYS)  # type: ignore[return-value]
        return (None, None, None, None)
    if isinstance(raw, Sequence) and not isinstance(raw, str | bytes):
        padded = list(raw[:4]) + [None] * (4 - min(len(raw), 4))
        return (padded[0], padded[1], padded[2], padded[3])
    return (None, None, None, None)


def normalize_hierarchy(raw: Any) -> CategoryHierarchy:
    """Return a fully populated hierarchy for any input; never raises."""

    try:
        l0, l1, l2, l3 = _levels_from(raw)
    except Exception:
        return CategoryHierarchy()
    return CategoryHierarchy(
        l0=normalize_l0(l0, l1),
        l1=_level(l1),
        l2=_level(l2),
        l3=_level(l3),
    )


__all__ = [
    "CategoryHierarchy",
    "L0_VOCABULARY",
    "UNCATEGORIZED",
    "normalize_hierarchy",
    "normalize_l0",
]
