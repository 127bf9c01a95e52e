from datetime import date
from decimal import Decimal

from ledger_sync.normalize import compute_fingerprint, ledger_amount, normalize_transaction

from tests.helpers.fake_provider import plaid_tx


def test_outflow_becomes_negative_and_inflow_positive():
    def norm(amount):
        return normalize_transaction(plaid_tx("t1", amount, "X"), user_id="u", bank_account_id="b")

    assert norm(50.00).amount == Decimal("-50.00")
    assert norm(-50.00).amount == Decimal("50.00")


def test_amount_rounding_and_garbage():
    assert ledger_amount("12.345") == Decimal("-12.35")
    assert ledger_amount("abc") == Decimal("0.00")
    assert ledger_amount(None) == Decimal("0.00")
    assert ledger_amount(0) == Decimal("0.00")


def test_description_preference_order():
    tx = plaid_tx("t1", 5, "UBER 063015 SF**POOL**", merchant_name="Uber")
    assert normalize_transaction(tx, user_id="u", bank_account_id="b").description == "Uber"

    tx = plaid_tx("t1", 5, "UBER 063015 SF**POOL**")
    assert normalize_transaction(tx, user_id="u", bank_account_id="b").description == (
        "UBER 063015 SF**POOL**"
    )

    tx = {"transaction_id": "t1", "amount": 5, "original_description": "ACH DEBIT"}
    assert normalize_transaction(tx, user_id="u", bank_account_id="b").description == "ACH DEBIT"


def test_fields_carried_and_hint_extracted():
    tx = plaid_tx(
        "t9",
        "23.10",
        "Lyft",
        day="2025-02-14",
        pending=True,
        primary="TRANSPORTATION",
        detailed="TRANSPORTATION_TAXIS_AND_RIDE_SHARES",
    )
    tx["category"] = ["Travel", "Taxi"]
    ct = normalize_transaction(tx, user_id="u", bank_account_id="b")
    assert ct.provider_transaction_id == "t9"
    assert ct.date == date(2025, 2, 14)
    assert ct.pending is True
    assert ct.provider_category_hint.primary == "TRANSPORTATION"
    assert ct.provider_category_hint.detailed == "TRANSPORTATION_TAXIS_AND_RIDE_SHARES"
    assert ct.provider_category_hint.legacy == ("Travel", "Taxi")
    assert ct.review_status == "needs-review"
    assert ct.raw is not None and ct.raw["name"] == "Lyft"


def test_total_on_malformed_input():
    ct = normalize_transaction({"amount": "n/a", "date": "soon"}, user_id="u", bank_account_id="b")
    assert ct.description == ""
    assert ct.amount == Decimal("0.00")
    assert ct.date is None
    assert ct.provider_transaction_id  # fingerprint


def test_missing_id_uses_stable_fingerprint():
    tx = plaid_tx(None, 19.99, "NETFLIX")
    a = normalize_transaction(tx, user_id="u", bank_account_id="b")
    b = normalize_transaction(dict(tx), user_id="u", bank_account_id="b")
    assert a.provider_transaction_id == b.provider_transaction_id
    assert len(a.provider_transaction_id) == 64
    assert compute_fingerprint(user_id="u", bank_account_id="other", tx=tx) != (
        a.provider_transaction_id
    )
