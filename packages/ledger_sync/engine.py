"""Rule resolution engine.

Competing categorization signals are resolved by an ordered list of strategy
objects; the first strategy that returns a match wins:

1. ``UserCorrectionStrategy``  - the user's own learned rules (1.0)
2. ``PropertyRuleStrategy``    - rules derived from the user's properties
   (1.0 exact / 0.98 whole word / 0.95 substring)
3. ``GlobalVendorStrategy``    - the shared vendor keyword map
   (0.9 whole token / 0.8 inside a token)
4. ``DescriptionHeuristicStrategy`` - banking phrases in the description
   (transfers, debt payments, rent, deposits, interest, refunds)
5. ``ProviderHintStrategy``    - the provider's own category guess
   (0.7 / 0.6 / 0.5)

Money coming in is never booked as an expense. A match that would do so is
set aside and the remaining strategies are tried; if none of them produces a
usable match, the set-aside one is rebooked as income with its confidence
capped below the review threshold. When nothing matches at all, a fallback
hierarchy keyed on the amount sign is used with confidence 0.0.

The engine does no I/O: rules come in through a ``RuleContext`` snapshot, and
``categorize`` never raises.
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Protocol

from .config import DEFAULT_REVIEW_THRESHOLD
from .generalize import (
    Generalizer,
    HeuristicGeneralizer,
    normalize_match_key,
    safe_generalize,
    sanitize_vendor_key,
)
from .heuristics import match_description
from .hierarchy import CategoryHierarchy
from .logging_setup import get_logger
from .models import (
    CanonicalTransaction,
    Categorization,
    CategorizationRule,
    CategorySource,
    ProviderCategoryHint,
    ReviewStatus,
)
from .provider_hints import translate_hint
from .rules import RuleContext

_logger = get_logger("ledger_sync.engine")

EXACT_KEYWORD_CONFIDENCE = 1.0
WHOLE_WORD_CONFIDENCE = 0.98
SUBSTRING_CONFIDENCE = 0.95
VENDOR_TOKEN_CONFIDENCE = 0.9
VENDOR_INFIX_CONFIDENCE = 0.8
VENDOR_INFIX_MIN_LEN = 5
REBOOKED_INCOME_CONFIDENCE = 0.5

RENT_INCOME = CategoryHierarchy(
    "Income", "Rental Income", "Line 3: Rents Received", "Residential Rent"
)
UNCATEGORIZED_INCOME = CategoryHierarchy(
    "Income", "Uncategorized Income", "Needs Review", "Uncategorized Income"
)


@dataclass(frozen=True, slots=True)
class MatchInput:
    """What strategies see of a transaction.

    ``match_key`` is the generalized, normalized description (raw description
    when generalization degraded); ``vendor_key`` is the underscore form of the
    raw description used by the vendor map.
    """

    description: str
    amount: Decimal
    provider_hint: ProviderCategoryHint | None
    match_key: str
    vendor_key: str
    normalized_description: str


@dataclass(frozen=True, slots=True)
class RuleMatch:
    hierarchy: CategoryHierarchy
    confidence: float
    source: CategorySource
    explanation: str
    cost_center: str | None = None


class Strategy(Protocol):
    name: str

    def try_match(self, tx: MatchInput, ctx: RuleContext) -> RuleMatch | None: ...


# ---- Strategies --------------------------------------------------------------


class UserCorrectionStrategy:
    name = "user-correction"

    def try_match(self, tx: MatchInput, ctx: RuleContext) -> RuleMatch | None:
        rule = ctx.user_corrections.get(tx.match_key)
        if rule is None and tx.normalized_description != tx.match_key:
            rule = ctx.user_corrections.get(tx.normalized_description)
        if rule is None:
            return None
        return RuleMatch(
            hierarchy=rule.hierarchy,
            confidence=1.0,
            source="user-correction",
            explanation=f'Matched your rule "{rule.match_key}"',
            cost_center=rule.cost_center,
        )


@lru_cache(maxsize=4096)
def _word_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![A-Z0-9]){re.escape(keyword)}(?![A-Z0-9])")


class PropertyRuleStrategy:
    name = "property-derived"

    @staticmethod
    def _score(keyword: str, text: str) -> float | None:
        if keyword == text:
            return EXACT_KEYWORD_CONFIDENCE
        if keyword not in text:
            return None
        if _word_pattern(keyword).search(text):
            return WHOLE_WORD_CONFIDENCE
        return SUBSTRING_CONFIDENCE

    def try_match(self, tx: MatchInput, ctx: RuleContext) -> RuleMatch | None:
        text = tx.normalized_description
        if not text:
            return None
        best: tuple[tuple[int, int, float], CategorizationRule, float] | None = None
        for rule in ctx.property_rules:
            score = self._score(rule.match_key, text)
            if score is None:
                continue
            rank = (len(rule.match_key), rule.priority, score)
            if best is None or rank > best[0]:
                best = (rank, rule, score)
        if best is None:
            return None
        _, rule, score = best
        return RuleMatch(
            hierarchy=rule.hierarchy,
            confidence=score,
            source="property-derived",
            explanation=f'Matched property keyword "{rule.match_key}"',
            cost_center=rule.cost_center,
        )


class GlobalVendorStrategy:
    name = "global-vendor-map"

    def try_match(self, tx: MatchInput, ctx: RuleContext) -> RuleMatch | None:
        if not tx.vendor_key:
            return None
        bounded = f"_{tx.vendor_key}_"
        best: tuple[tuple[int, float, int], CategorizationRule, float] | None = None
        for rule in ctx.global_rules:
            key = rule.match_key
            if f"_{key}_" in bounded:
                score = VENDOR_TOKEN_CONFIDENCE
            elif len(key.replace("_", "")) >= VENDOR_INFIX_MIN_LEN and key in tx.vendor_key:
                score = VENDOR_INFIX_CONFIDENCE
            else:
                continue
            rank = (len(key), score, rule.priority)
            if best is None or rank > best[0]:
                best = (rank, rule, score)
        if best is None:
            return None
        _, rule, score = best
        return RuleMatch(
            hierarchy=rule.hierarchy,
            confidence=score,
            source="global-vendor-map",
            explanation=f"Matched vendor {rule.match_key}",
            cost_center=rule.cost_center,
        )


class DescriptionHeuristicStrategy:
    name = "description-heuristic"

    def try_match(self, tx: MatchInput, ctx: RuleContext) -> RuleMatch | None:
        hit = match_description(tx.description, tx.amount)
        if hit is None:
            return None
        return RuleMatch(
            hierarchy=hit.hierarchy,
            confidence=hit.confidence,
            source="description-heuristic",
            explanation=f'Description mentions "{hit.phrase}"',
        )


class ProviderHintStrategy:
    name = "provider-hint"

    def try_match(self, tx: MatchInput, ctx: RuleContext) -> RuleMatch | None:
        hit = translate_hint(tx.provider_hint, tx.amount)
        if hit is None:
            return None
        return RuleMatch(
            hierarchy=hit.hierarchy,
            confidence=hit.confidence,
            source="provider-hint",
            explanation=f"Provider category {hit.matched}",
        )


def fallback_match(amount: Decimal) -> RuleMatch:
    l0 = "Income" if amount > 0 else "Expense"
    return RuleMatch(
        hierarchy=CategoryHierarchy(l0, "General", "Needs Review", "Uncategorized"),
        confidence=0.0,
        source="fallback",
        explanation="No rule matched",
    )


def points_the_wrong_way(match: RuleMatch, amount: Decimal) -> bool:
    return amount > 0 and match.hierarchy.l0 == "Expense"


def rebook_as_income(match: RuleMatch) -> RuleMatch:
    """Turn an expense match on an inflow into income that needs review."""

    h = match.hierarchy
    rent = any(word in level for level in (h.l1, h.l3) for word in ("Rent", "Lease"))
    return dataclasses.replace(
        match,
        hierarchy=RENT_INCOME if rent else UNCATEGORIZED_INCOME,
        confidence=min(match.confidence, REBOOKED_INCOME_CONFIDENCE),
        explanation=f"{match.explanation}; booked as income because money came in",
    )


def default_strategies() -> list[Strategy]:
    return [
        UserCorrectionStrategy(),
        PropertyRuleStrategy(),
        GlobalVendorStrategy(),
        DescriptionHeuristicStrategy(),
        ProviderHintStrategy(),
    ]


# ---- Engine ------------------------------------------------------------------


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")


class RuleResolutionEngine:
    """Resolve a transaction to a category using ordered strategies.

    Parameters
    ----------
    strategies:
        Ordered strategies; defaults to ``default_strategies()``.
    generalizer:
        Used to build the user-correction lookup key; defaults to the local
        heuristic generalizer.
    review_threshold:
        Confidence at or above which a result is auto-approved.
    """

    def __init__(
        self,
        strategies: Sequence[Strategy] | None = None,
        *,
        generalizer: Generalizer | None = None,
        review_threshold: float = DEFAULT_REVIEW_THRESHOLD,
    ) -> None:
        self.strategies: tuple[Strategy, ...] = tuple(
            default_strategies() if strategies is None else strategies
        )
        self.generalizer: Generalizer = generalizer or HeuristicGeneralizer()
        self.review_threshold = review_threshold

    def review_status_for(self, confidence: float) -> ReviewStatus:
        return "approved" if confidence >= self.review_threshold else "needs-review"

    def _match_input(
        self, description: str, amount: Decimal, provider_hint: ProviderCategoryHint | None
    ) -> MatchInput:
        key, degraded = safe_generalize(self.generalizer, description)
        if degraded:
            _logger.info("engine:generalize_degraded using_raw_description=true")
        try:
            vendor_key = sanitize_vendor_key(description)
        except Exception:  # noqa: BLE001
            vendor_key = ""
        return MatchInput(
            description=description,
            amount=amount,
            provider_hint=provider_hint,
            match_key=key,
            vendor_key=vendor_key,
            normalized_description=normalize_match_key(description),
        )

    def categorize(
        self,
        description: str,
        amount: object,
        provider_hint: ProviderCategoryHint | None,
        ctx: RuleContext,
    ) -> Categorization:
        """Return the winning categorization; never raises."""

        amt = _to_decimal(amount)
        match: RuleMatch | None = None
        set_aside: RuleMatch | None = None
        try:
            tx = self._match_input(description or "", amt, provider_hint)
        except Exception as e:  # noqa: BLE001
            _logger.warning("engine:input_failed error=%s", e.__class__.__name__)
            tx = None

        if tx is not None:
            for strategy in self.strategies:
                try:
                    match = strategy.try_match(tx, ctx)
                except Exception as e:  # noqa: BLE001
                    _logger.warning(
                        "engine:strategy_failed strategy=%s error=%s",
                        getattr(strategy, "name", type(strategy).__name__),
                        e.__class__.__name__,
                    )
                    continue
                if match is None:
                    continue
                if not points_the_wrong_way(match, amt):
                    break
                _logger.debug(
                    "engine:direction_conflict strategy=%s l0=%s", match.source, match.hierarchy.l0
                )
                set_aside = set_aside or match
                match = None

        if match is None and set_aside is not None:
            match = rebook_as_income(set_aside)
        if match is None:
            match = fallback_match(amt)

        return Categorization(
            hierarchy=match.hierarchy,
            confidence=match.confidence,
            source=match.source,
            review_status=self.review_status_for(match.confidence),
            explanation=match.explanation,
            cost_center=match.cost_center,
        )

    def apply(self, tx: CanonicalTransaction, ctx: RuleContext) -> CanonicalTransaction:
        """Return ``tx`` with the engine's categorization filled in."""

        result = self.categorize(tx.description, tx.amount, tx.provider_category_hint, ctx)
        return dataclasses.replace(
            tx,
            category_hierarchy=result.hierarchy,
            cost_center=result.cost_center,
            confidence=result.confidence,
            review_status=result.review_status,
            category_source=result.source,
            explanation=result.explanation,
        )


__all__ = [
    "DescriptionHeuristicStrategy",
    "GlobalVendorStrategy",
    "MatchInput",
    "PropertyRuleStrategy",
    "ProviderHintStrategy",
    "RuleMatch",
    "RuleResolutionEngine",
    "Strategy",
    "UserCorrectionStrategy",
    "default_strategies",
    "fallback_match",
    "points_the_wrong_way",
    "rebook_as_income",
]
