"""Provider transaction → ``CanonicalTransaction``.

The provider reports money leaving the account as a positive amount; the
ledger books outflows negative and inflows positive, so the sign is flipped
here and nowhere else.

``normalize_transaction`` is total: malformed fields turn into empty strings,
zero amounts or ``None`` dates instead of exceptions.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .models import CanonicalTransaction, ProviderCategoryHint

_ZERO = Decimal("0.00")


def _to_decimal_2(raw: Any) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        d = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _to_date(raw: Any) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if raw is None:
        return None
    s = str(raw).strip()
    if len(s) < 10:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def _norm_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def ledger_amount(provider_amount: Any) -> Decimal:
    """Flip the provider's sign convention (``50.00`` → ``-50.00``).

    Unparseable amounts become ``0.00``.
    """

    d = _to_decimal_2(provider_amount)
    if d is None or d == 0:
        return _ZERO
    return -d


def best_description(tx: Mapping[str, Any]) -> str:
    for key in ("merchant_name", "name", "original_description"):
        value = _norm_str(tx.get(key))
        if value:
            return value
    return ""


def extract_category_hint(tx: Mapping[str, Any]) -> ProviderCategoryHint:
    pfc = tx.get("personal_finance_category")
    primary = detailed = None
    if isinstance(pfc, Mapping):
        primary = _norm_str(pfc.get("primary"))
        detailed = _norm_str(pfc.get("detailed"))
    legacy_raw = tx.get("category")
    legacy: tuple[str, ...] = ()
    if isinstance(legacy_raw, list | tuple):
        legacy = tuple(s for s in (_norm_str(v) for v in legacy_raw) if s)
    return ProviderCategoryHint(primary=primary, detailed=detailed, legacy=legacy)


def compute_fingerprint(
    *,
    user_id: str,
    bank_account_id: str,
    tx: Mapping[str, Any],
) -> str:
    """Stable SHA-256 over canonical fields, used when the provider omits an id.

    Fields: owner (user, bank account), provider account, amount (2dp string),
    date (YYYY-MM-DD), merchant and name (trimmed).
    """

    d = _to_date(tx.get("date"))
    amt = _to_decimal_2(tx.get("amount"))
    payload = {
        "user": user_id,
        "account": bank_account_id,
        "provider_account": _norm_str(tx.get("account_id")),
        "amount": f"{amt:.2f}" if amt is not None else None,
        "date": d.isoformat() if d else None,
        "merchant": _norm_str(tx.get("merchant_name")),
        "name": _norm_str(tx.get("name")),
    }
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _jsonable(tx: Mapping[str, Any]) -> dict[str, Any] | None:
    try:
        return json.loads(json.dumps(dict(tx), default=str))
    except (TypeError, ValueError):
        return None


def normalize_transaction(
    provider_tx: Mapping[str, Any],
    *,
    user_id: str,
    bank_account_id: str,
) -> CanonicalTransaction:
    """Map one provider transaction onto the canonical shape (uncategorized)."""

    tx: Mapping[str, Any] = provider_tx if isinstance(provider_tx, Mapping) else {}
    provider_id = _norm_str(tx.get("transaction_id")) or compute_fingerprint(
        user_id=user_id, bank_account_id=bank_account_id, tx=tx
    )
    return CanonicalTransaction(
        provider_transaction_id=provider_id,
        user_id=user_id,
        bank_account_id=bank_account_id,
        provider_account_id=_norm_str(tx.get("account_id")),
        date=_to_date(tx.get("date")),
        description=best_description(tx),
        amount=ledger_amount(tx.get("amount")),
        pending=bool(tx.get("pending") or False),
        merchant_name=_norm_str(tx.get("merchant_name")),
        provider_category_hint=extract_category_hint(tx),
        raw=_jsonable(tx),
    )


__all__ = [
    "best_description",
    "compute_fingerprint",
    "extract_category_hint",
    "ledger_amount",
    "normalize_transaction",
]
