"""Rule store: persisted categorization rules and the per-run snapshot.

Three rule sources share one table:

- ``user-correction``: learned from a user fixing a category; keyed on the
  generalized, normalized description.
- ``property-derived``: generated from a property profile (lender, insurer,
  tenant names...); keyed on a normalized keyword, scoped to the property.
- ``global-vendor-map``: seeded vendor keywords shared by all users; keyed on
  the underscore form (``HOME_DEPOT``) and stored with ``user_id = NULL``.

Rule ids are a deterministic hash of ``(user_id, match_key, scope_id)`` so
re-deriving a rule overwrites it in place; concurrent writers converge.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType

from ledger_db.client import upsert_statement
from ledger_db.models.ledger import CategorizationRuleRow
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from .generalize import (
    Generalizer,
    HeuristicGeneralizer,
    normalize_match_key,
    safe_generalize,
    sanitize_vendor_key,
)
from .hierarchy import CategoryHierarchy, normalize_hierarchy
from .logging_setup import get_logger
from .models import CategorizationRule, RuleSource

_logger = get_logger("ledger_sync.rules")

PRIORITY_BY_SOURCE: dict[str, int] = {
    "user-correction": 100,
    "property-derived": 50,
    "global-vendor-map": 10,
}

_GLOBAL_OWNER = "__global__"


def compute_rule_id(user_id: str | None, match_key: str, scope_id: str | None = None) -> str:
    """Return the deterministic id for a rule (hex SHA-256)."""

    payload = json.dumps(
        [user_id or _GLOBAL_OWNER, normalize_match_key(match_key), scope_id or ""],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _normalize_key_for(source: RuleSource, match_key: str) -> str:
    if source == "global-vendor-map":
        return sanitize_vendor_key(match_key)
    return normalize_match_key(match_key)


def make_rule(
    *,
    user_id: str | None,
    match_key: str,
    hierarchy: object,
    source: RuleSource,
    cost_center: str | None = None,
    scope_id: str | None = None,
    priority: int | None = None,
) -> CategorizationRule:
    """Build a validated rule value (normalized key, hierarchy and id)."""

    if source == "global-vendor-map":
        if user_id is not None:
            raise ValueError("global vendor-map rules must not carry a user_id")
    elif not user_id:
        raise ValueError(f"{source} rules require a user_id")
    key = _normalize_key_for(source, match_key)
    if not key:
        raise ValueError("match_key must not be blank")
    return CategorizationRule(
        rule_id=compute_rule_id(user_id, key, scope_id),
        user_id=user_id,
        match_key=key,
        hierarchy=normalize_hierarchy(hierarchy),
        source=source,
        priority=PRIORITY_BY_SOURCE[source] if priority is None else priority,
        cost_center=cost_center or None,
        scope_id=scope_id or None,
    )


def _row_to_rule(row: CategorizationRuleRow) -> CategorizationRule:
    return CategorizationRule(
        rule_id=row.rule_id,
        user_id=row.user_id,
        match_key=row.match_key,
        hierarchy=CategoryHierarchy(
            row.category_l0, row.category_l1, row.category_l2, row.category_l3
        ),
        source=row.source,  # type: ignore[arg-type]
        priority=int(row.priority),
        cost_center=row.cost_center,
        scope_id=row.scope_id,
    )


def upsert_rules(session: Session, rules: Iterable[CategorizationRule]) -> int:
    """Merge-upsert rules by ``rule_id``; returns the number of rows written."""

    now = datetime.now(UTC)
    rows = [
        {
            "rule_id": r.rule_id,
            "user_id": r.user_id,
            "match_key": r.match_key,
            "scope_id": r.scope_id,
            "category_l0": r.hierarchy.l0,
            "category_l1": r.hierarchy.l1,
            "category_l2": r.hierarchy.l2,
            "category_l3": r.hierarchy.l3,
            "cost_center": r.cost_center,
            "source": r.source,
            "priority": r.priority,
            "created_at": now,
            "updated_at": now,
        }
        for r in rules
    ]
    if not rows:
        return 0
    stmt = upsert_statement(session, CategorizationRuleRow).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=[CategorizationRuleRow.rule_id],
        set_={
            "match_key": stmt.excluded.match_key,
            "category_l0": stmt.excluded.category_l0,
            "category_l1": stmt.excluded.category_l1,
            "category_l2": stmt.excluded.category_l2,
            "category_l3": stmt.excluded.category_l3,
            "cost_center": stmt.excluded.cost_center,
            "source": stmt.excluded.source,
            "priority": stmt.excluded.priority,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)
    return len(rows)


def delete_rules(session: Session, rule_ids: Iterable[str]) -> int:
    ids = list(rule_ids)
    if not ids:
        return 0
    result = session.execute(
        delete(CategorizationRuleRow).where(CategorizationRuleRow.rule_id.in_(ids))
    )
    return int(result.rowcount or 0)


def list_rules(
    session: Session,
    *,
    user_id: str | None,
    source: RuleSource | None = None,
    scope_id: str | None = None,
) -> list[CategorizationRule]:
    stmt = select(CategorizationRuleRow)
    if user_id is None:
        stmt = stmt.where(CategorizationRuleRow.user_id.is_(None))
    else:
        stmt = stmt.where(CategorizationRuleRow.user_id == user_id)
    if source is not None:
        stmt = stmt.where(CategorizationRuleRow.source == source)
    if scope_id is not None:
        stmt = stmt.where(CategorizationRuleRow.scope_id == scope_id)
    rows = session.execute(stmt.order_by(CategorizationRuleRow.rule_id)).scalars().all()
    return [_row_to_rule(r) for r in rows]


def learn_user_correction(
    session: Session,
    *,
    user_id: str,
    description: str,
    hierarchy: object,
    cost_center: str | None = None,
    generalizer: Generalizer | None = None,
) -> CategorizationRule:
    """Persist a user-correction rule for the generalized ``description``.

    The same generalization runs at lookup time, so ``"UBER TRIP
    HELP.UBER.COM"`` and ``"UBER TRIP"`` land on the same rule.
    """

    key, degraded = safe_generalize(generalizer or HeuristicGeneralizer(), description)
    rule = make_rule(
        user_id=user_id,
        match_key=key,
        hierarchy=hierarchy,
        source="user-correction",
        cost_center=cost_center,
    )
    upsert_rules(session, [rule])
    _logger.info(
        'rules:learned user_id=%s key="%s" l0=%s degraded=%s',
        user_id,
        rule.match_key[:40],
        rule.hierarchy.l0,
        degraded,
    )
    return rule


# ---- Snapshot ----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleContext:
    """Immutable view of every rule that applies to one user.

    Loaded once per sync run; the engine only reads it.
    """

    user_id: str
    user_corrections: Mapping[str, CategorizationRule] = field(
        default_factory=lambda: MappingProxyType({})
    )
    property_rules: Sequence[CategorizationRule] = ()
    global_rules: Sequence[CategorizationRule] = ()

    @classmethod
    def from_rules(cls, user_id: str, rules: Iterable[CategorizationRule]) -> RuleContext:
        corrections: dict[str, CategorizationRule] = {}
        property_rules: list[CategorizationRule] = []
        global_rules: list[CategorizationRule] = []
        for r in rules:
            if r.source == "user-correction" and r.user_id == user_id:
                prev = corrections.get(r.match_key)
                if prev is None or r.priority > prev.priority:
                    corrections[r.match_key] = r
            elif r.source == "property-derived" and r.user_id == user_id:
                property_rules.append(r)
            elif r.source == "global-vendor-map":
                global_rules.append(r)
        return cls(
            user_id=user_id,
            user_corrections=MappingProxyType(corrections),
            property_rules=tuple(property_rules),
            global_rules=tuple(global_rules),
        )

    @property
    def size(self) -> int:
        return len(self.user_corrections) + len(self.property_rules) + len(self.global_rules)


def load_rule_context(session: Session, user_id: str) -> RuleContext:
    """Read the user's rules plus the global vendor map into a snapshot."""

    rows = (
        session.execute(
            select(CategorizationRuleRow).where(
                or_(
                    CategorizationRuleRow.user_id == user_id,
                    CategorizationRuleRow.user_id.is_(None),
                )
            )
        )
        .scalars()
        .all()
    )
    ctx = RuleContext.from_rules(user_id, (_row_to_rule(r) for r in rows))
    _logger.debug(
        "rules:context_loaded user_id=%s corrections=%d property=%d global=%d",
        user_id,
        len(ctx.user_corrections),
        len(ctx.property_rules),
        len(ctx.global_rules),
    )
    return ctx


__all__ = [
    "PRIORITY_BY_SOURCE",
    "RuleContext",
    "compute_rule_id",
    "delete_rules",
    "learn_user_correction",
    "list_rules",
    "load_rule_context",
    "make_rule",
    "upsert_rules",
]
