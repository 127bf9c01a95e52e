# ruff: noqa: E501
"""Static translation of the provider's category guess into our hierarchy.

The provider tags transactions with a personal-finance category
(``primary``/``detailed`` codes such as ``TRAVEL`` /
``TRAVEL_TAXIS_AND_RIDE_SHARES``) and, on older items, a free-text category
list (``["Travel", "Taxi"]``). Detailed codes are most specific and map with
the highest confidence, then primary codes, then the legacy list.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .hierarchy import CategoryHierarchy
from .models import ProviderCategoryHint

DETAILED_CONFIDENCE = 0.7
PRIMARY_CONFIDENCE = 0.6
LEGACY_CONFIDENCE = 0.5

_AUTO = ("Expense", "Travel", "Line 6: Auto & Travel")
_UTIL = ("Expense", "Utilities", "Line 17: Utilities")
_OTHER = ("Expense", "Office Admin", "Line 19: Other")


def _h(prefix: tuple[str, str, str], l3: str) -> CategoryHierarchy:
    return CategoryHierarchy(*prefix, l3)


DETAILED_MAP: dict[str, CategoryHierarchy] = {
    "TRAVEL_TAXIS_AND_RIDE_SHARES": _h(_AUTO, "Taxi & Rideshare"),
    "TRAVEL_PARKING": _h(_AUTO, "Parking"),
    "TRANSPORTATION_PARKING": _h(_AUTO, "Parking"),
    "TRANSPORTATION_TOLLS": _h(_AUTO, "Tolls"),
    "TRANSPORTATION_TAXIS_AND_RIDE_SHARES": _h(_AUTO, "Taxi & Rideshare"),
    "TRANSPORTATION_GAS": _h(_AUTO, "Fuel"),
    "TRAVEL_GAS": _h(_AUTO, "Fuel"),
    "TRAVEL_FLIGHTS": _h(_AUTO, "Airfare"),
    "TRAVEL_LODGING": _h(_AUTO, "Travel & Lodging"),
    "TRAVEL_RENTAL_CARS": _h(_AUTO, "Travel & Lodging"),
    "RENT_AND_UTILITIES_GAS_AND_ELECTRICITY": _h(_UTIL, "Gas & Electric"),
    "RENT_AND_UTILITIES_WATER": _h(_UTIL, "Water"),
    "RENT_AND_UTILITIES_SEWAGE_AND_WASTE_MANAGEMENT": _h(_UTIL, "Trash & Sewer"),
    "RENT_AND_UTILITIES_INTERNET_AND_CABLE": _h(_UTIL, "Telephone & Internet"),
    "RENT_AND_UTILITIES_TELEPHONE": _h(_UTIL, "Telephone & Internet"),
    "RENT_AND_UTILITIES_RENT": CategoryHierarchy("Expense", "Rent & Lease", "Line 19: Other", "Rent Expense"),
    "GENERAL_SERVICES_INSURANCE": CategoryHierarchy("Expense", "Insurance", "Line 9: Insurance", "Insurance"),
    "LOAN_PAYMENTS_MORTGAGE_PAYMENT": CategoryHierarchy("Liability", "Mortgage", "Balance Sheet", "Mortgage Payment"),
    "LOAN_PAYMENTS_CREDIT_CARD_PAYMENT": CategoryHierarchy("Liability", "Credit Card", "Balance Sheet", "Card Payment"),
    "HOME_IMPROVEMENT_HARDWARE": CategoryHierarchy("Expense", "Repairs", "Line 14: Repairs", "Materials & Supplies"),
    "HOME_IMPROVEMENT_REPAIR_AND_MAINTENANCE": CategoryHierarchy("Expense", "Repairs", "Line 14: Repairs", "General Repairs"),
    "GENERAL_MERCHANDISE_OFFICE_SUPPLIES": CategoryHierarchy("Expense", "Office Admin", "Line 15: Supplies", "Office Supplies"),
    "GENERAL_SERVICES_ACCOUNTING_AND_FINANCIAL_PLANNING": CategoryHierarchy("Expense", "Professional Fees", "Line 10: Legal and Professional Fees", "Accounting"),
    "GOVERNMENT_AND_NON_PROFIT_TAX_PAYMENT": CategoryHierarchy("Expense", "Taxes", "Line 16: Taxes", "Tax Payment"),
    "BANK_FEES_OVERDRAFT_FEES": _h(_OTHER, "Bank Fees"),
    "BANK_FEES_OTHER_BANK_FEES": _h(_OTHER, "Bank Fees"),
    "INCOME_INTEREST_EARNED": CategoryHierarchy("Income", "Other Income", "Interest", "Interest Income"),
    "TRANSFER_IN_ACCOUNT_TRANSFER": CategoryHierarchy("Transfer", "Transfers", "Balance Sheet", "Internal Transfer"),
    "TRANSFER_OUT_ACCOUNT_TRANSFER": CategoryHierarchy("Transfer", "Transfers", "Balance Sheet", "Internal Transfer"),
}

PRIMARY_MAP: dict[str, CategoryHierarchy] = {
    "FOOD_AND_DRINK": CategoryHierarchy("Expense", "Meals", "Line 19: Other", "Business Meals"),
    "TRAVEL": _h(_AUTO, "Travel & Lodging"),
    "TRANSPORTATION": _h(_AUTO, "Local Transportation"),
    "RENT_AND_UTILITIES": _h(_UTIL, "General Utilities"),
    "HOME_IMPROVEMENT": CategoryHierarchy("Expense", "Repairs", "Line 14: Repairs", "General Repairs"),
    "GENERAL_SERVICES": _h(_OTHER, "General Services"),
    "GENERAL_MERCHANDISE": CategoryHierarchy("Expense", "Office Admin", "Line 15: Supplies", "General Supplies"),
    "BANK_FEES": _h(_OTHER, "Bank Fees"),
    "LOAN_PAYMENTS": CategoryHierarchy("Liability", "Loans", "Balance Sheet", "Loan Payment"),
    "TRANSFER_IN": CategoryHierarchy("Transfer", "Transfers", "Balance Sheet", "Transfer In"),
    "TRANSFER_OUT": CategoryHierarchy("Transfer", "Transfers", "Balance Sheet", "Transfer Out"),
    "PERSONAL_CARE": CategoryHierarchy("Equity", "Owner Distribution", "Non-Deductible", "Personal Expense"),
    "ENTERTAINMENT": CategoryHierarchy("Equity", "Owner Distribution", "Non-Deductible", "Personal Entertainment"),
    "GOVERNMENT_AND_NON_PROFIT": CategoryHierarchy("Expense", "Taxes", "Line 16: Taxes", "Government Fees"),
}

# Legacy category lists are matched on their lower-cased terms, most specific
# term first.
LEGACY_MAP: dict[str, CategoryHierarchy] = {
    "taxi": _h(_AUTO, "Taxi & Rideshare"),
    "ride share": _h(_AUTO, "Taxi & Rideshare"),
    "parking": _h(_AUTO, "Parking"),
    "tolls": _h(_AUTO, "Tolls"),
    "gas stations": _h(_AUTO, "Fuel"),
    "airlines and aviation services": _h(_AUTO, "Airfare"),
    "lodging": _h(_AUTO, "Travel & Lodging"),
    "utilities": _h(_UTIL, "General Utilities"),
    "telecommunication services": _h(_UTIL, "Telephone & Internet"),
    "insurance": CategoryHierarchy("Expense", "Insurance", "Line 9: Insurance", "Insurance"),
    "restaurants": CategoryHierarchy("Expense", "Meals", "Line 19: Other", "Business Meals"),
    "food and drink": CategoryHierarchy("Expense", "Meals", "Line 19: Other", "Business Meals"),
    "hardware store": CategoryHierarchy("Expense", "Repairs", "Line 14: Repairs", "Materials & Supplies"),
    "bank fees": _h(_OTHER, "Bank Fees"),
    "travel": _h(_AUTO, "Travel & Lodging"),
    "transfer": CategoryHierarchy("Transfer", "Transfers", "Balance Sheet", "Transfer"),
}


@dataclass(frozen=True, slots=True)
class HintMatch:
    hierarchy: CategoryHierarchy
    confidence: float
    matched: str


def _directional(hierarchy: CategoryHierarchy, amount: Decimal) -> CategoryHierarchy | None:
    # An inflow tagged with an expense-only code (e.g. a merchant refund) is not
    # trustworthy enough to book as an expense.
    if amount > 0 and hierarchy.l0 == "Expense":
        return None
    return hierarchy


def translate_hint(hint: ProviderCategoryHint | None, amount: Decimal) -> HintMatch | None:
    """Return the best hierarchy the provider's own category supports, if any."""

    if hint is None or hint.is_empty():
        return None

    detailed = (hint.detailed or "").strip().upper()
    if detailed and detailed in DETAILED_MAP:
        h = _directional(DETAILED_MAP[detailed], amount)
        if h is not None:
            return HintMatch(h, DETAILED_CONFIDENCE, detailed)

    primary = (hint.primary or "").strip().upper()
    if primary and primary in PRIMARY_MAP:
        h = _directional(PRIMARY_MAP[primary], amount)
        if h is not None:
            return HintMatch(h, PRIMARY_CONFIDENCE, primary)

    for term in reversed(hint.legacy):
        mapped = LEGACY_MAP.get(term.strip().lower())
        if mapped is None:
            continue
        h = _directional(mapped, amount)
        if h is not None:
            return HintMatch(h, LEGACY_CONFIDENCE, term)
    return None


__all__ = [
    "DETAILED_CONFIDENCE",
    "HintMatch",
    "LEGACY_CONFIDENCE",
    "PRIMARY_CONFIDENCE",
    "translate_hint",
]
