"""Property-derived categorization rules.

A landlord's property profile names the counterparties that will show up on
bank statements: the lender, the insurer, the management company, utility
providers, vendors, the HOA and the tenants. Each becomes a keyword rule whose
hierarchy follows IRS Schedule E and whose L3 is prefixed with the property
nickname (``"[Maple Duplex] - Rents Received"``).

Regenerating replaces the property's rule set: rules derived earlier but no
longer produced by the current profile are deleted.
"""

from __future__ import annotations

from dataclasses import dataclass

from ledger_db.models.ledger import CategorizationRuleRow
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .hierarchy import CategoryHierarchy
from .logging_setup import get_logger
from .models import CategorizationRule
from .rules import delete_rules, make_rule, upsert_rules

_logger = get_logger("ledger_sync.property_rules")


class _ProfileModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Address(_ProfileModel):
    street: str | None = None


class Mortgage(_ProfileModel):
    lender_name: str | None = None


class TaxAndInsurance(_ProfileModel):
    insurance_provider: str | None = None


class Management(_ProfileModel):
    is_managed: str | None = None
    company_name: str | None = None


class Utility(_ProfileModel):
    type: str | None = None
    provider_name: str | None = None


class Vendor(_ProfileModel):
    name: str | None = None
    role: str | None = None


class Hoa(_ProfileModel):
    has_hoa: str | None = None
    contact_name: str | None = None


class Tenant(_ProfileModel):
    first_name: str | None = None
    last_name: str | None = None


class Unit(_ProfileModel):
    id: str
    tenants: list[Tenant] = Field(default_factory=list)


class PropertyProfile(_ProfileModel):
    """The slice of a property document the rule generator reads."""

    name: str | None = None
    address: Address | None = None
    is_multi_unit: bool = False
    mortgage: Mortgage | None = None
    tax_and_insurance: TaxAndInsurance | None = None
    management: Management | None = None
    utilities: list[Utility] = Field(default_factory=list)
    preferred_vendors: list[Vendor] = Field(default_factory=list)
    hoa: Hoa | None = None
    tenants: list[Tenant] = Field(default_factory=list)
    units: list[Unit] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class PropertyRulesResult:
    rules: tuple[CategorizationRule, ...]
    deleted: int


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    text = " ".join(value.split())
    return text or None


def _vendor_detail(role: str | None) -> tuple[str, str]:
    r = (role or "").lower()
    if "clean" in r or "maint" in r:
        return "Line 7: Cleaning and Maintenance", "Cleaning & Maintenance"
    if "plumb" in r or "electric" in r:
        return "Line 14: Repairs", "Plumbing & Electrical"
    return "Line 14: Repairs", "General Repairs"


def derive_property_rules(
    user_id: str, property_id: str, profile: PropertyProfile
) -> list[CategorizationRule]:
    """Return the rules implied by ``profile`` (no I/O).

    Returns an empty list when the property has no nickname, since every L3
    label is built from it.
    """

    nickname = _clean(profile.name)
    if not nickname:
        _logger.warning(
            "property_rules:skip property_id=%s reason=missing_nickname", property_id
        )
        return []

    out: dict[str, CategorizationRule] = {}

    def add(
        keyword: str | None,
        l0: str,
        l1: str,
        l2: str,
        detail: str | None,
        *,
        unit_id: str | None = None,
    ) -> None:
        key = _clean(keyword)
        if not key:
            return
        rule = make_rule(
            user_id=user_id,
            match_key=key,
            hierarchy=CategoryHierarchy(l0, l1, l2, f"[{nickname}] - {detail or 'General'}"),
            source="property-derived",
            cost_center=unit_id or property_id,
            scope_id=f"{property_id}/{unit_id}" if unit_id else property_id,
        )
        out[rule.rule_id] = rule

    add(nickname, "Income", "Rental Income", "Line 3: Rents Received", "Rents Received")
    if profile.address is not None:
        add(
            profile.address.street,
            "Expense",
            "Property Operations",
            "Line 19: Other",
            "Unassigned Property Expense",
        )
    if profile.mortgage is not None:
        add(
            profile.mortgage.lender_name,
            "Expense",
            "Mortgage Interest",
            "Line 12: Mortgage Interest",
            "Mortgage Interest Paid",
        )
    if profile.tax_and_insurance is not None:
        add(
            profile.tax_and_insurance.insurance_provider,
            "Expense",
            "Insurance",
            "Line 9: Insurance",
            "Property Insurance Premiums",
        )
    mgmt = profile.management
    if mgmt is not None and (mgmt.is_managed or "").lower() == "professional":
        add(
            mgmt.company_name,
            "Expense",
            "Management Fees",
            "Line 11: Management Fees",
            "Property Management Fees",
        )
    for util in profile.utilities:
        add(util.provider_name, "Expense", "Utilities", "Line 17: Utilities", util.type)
    for vendor in profile.preferred_vendors:
        line, detail = _vendor_detail(vendor.role)
        add(vendor.name, "Expense", "Repairs", line, detail)
    hoa = profile.hoa
    if hoa is not None and (hoa.has_hoa or "").lower() == "yes":
        add(hoa.contact_name, "Expense", "Dues & Fees", "Line 19: Other", "HOA Dues")

    def tenants(items: list[Tenant], unit_id: str | None = None) -> None:
        for t in items:
            first, last = _clean(t.first_name), _clean(t.last_name)
            if first and last:
                add(
                    f"{first} {last}",
                    "Income",
                    "Rental Income",
                    "Line 3: Rents Received",
                    "Rents Received",
                    unit_id=unit_id,
                )

    if profile.is_multi_unit and profile.units:
        for unit in profile.units:
            tenants(unit.tenants, unit.id)
    else:
        tenants(profile.tenants)

    return list(out.values())


def _existing_rule_ids(session: Session, user_id: str, property_id: str) -> set[str]:
    stmt = select(CategorizationRuleRow.rule_id).where(
        CategorizationRuleRow.user_id == user_id,
        CategorizationRuleRow.source == "property-derived",
        or_(
            CategorizationRuleRow.scope_id == property_id,
            CategorizationRuleRow.scope_id.startswith(f"{property_id}/", autoescape=True),
        ),
    )
    return set(session.execute(stmt).scalars().all())


def generate_rules_for_property(
    session: Session,
    *,
    user_id: str,
    property_id: str,
    profile: PropertyProfile,
) -> PropertyRulesResult:
    """Upsert the property's derived rules and drop the stale ones."""

    if not user_id or not property_id:
        raise ValueError("user_id and property_id are required")

    rules = derive_property_rules(user_id, property_id, profile)
    stale = _existing_rule_ids(session, user_id, property_id) - {r.rule_id for r in rules}
    deleted = delete_rules(session, stale)
    upsert_rules(session, rules)
    _logger.info(
        "property_rules:generated user_id=%s property_id=%s rules=%d deleted=%d",
        user_id,
        property_id,
        len(rules),
        deleted,
    )
    return PropertyRulesResult(rules=tuple(rules), deleted=deleted)


__all__ = [
    "PropertyProfile",
    "PropertyRulesResult",
    "derive_property_rules",
    "generate_rules_for_property",
]
