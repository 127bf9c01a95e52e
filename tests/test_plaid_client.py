import json
from datetime import date

import httpx
import pytest

from ledger_sync.config import Settings
from ledger_sync.errors import ProviderError
from ledger_sync.plaid_client import MUTATION_DURING_PAGINATION, PlaidClient, is_transient


def _client(handler) -> PlaidClient:
    return PlaidClient(
        client_id="cid",
        secret="shh",
        base_url="https://sandbox.plaid.com/",
        transport=httpx.MockTransport(handler),
    )


def test_transactions_get_request_and_page():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "transactions": [{"transaction_id": "t1", "amount": 1.0}, "junk"],
                "total_transactions": 7,
            },
        )

    with _client(handler) as client:
        page = client.transactions_get(
            "access-1",
            start_date=date(2025, 1, 1),
            end_date=date(2025, 6, 15),
            account_id="acc-1",
            offset=500,
            count=500,
        )

    assert page.total_transactions == 7
    assert [t["transaction_id"] for t in page.transactions] == ["t1"]
    [request] = seen
    assert request.url.path == "/transactions/get"
    body = json.loads(request.content)
    assert body == {
        "client_id": "cid",
        "secret": "shh",
        "access_token": "access-1",
        "start_date": "2025-01-01",
        "end_date": "2025-06-15",
        "options": {"count": 500, "offset": 500, "account_ids": ["acc-1"]},
    }


def test_transactions_sync_omits_empty_cursor():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "added": [{"transaction_id": "a"}],
                "modified": [],
                "removed": [{"transaction_id": "r"}],
                "next_cursor": "c1",
                "has_more": True,
            },
        )

    client = _client(handler)
    first = client.transactions_sync("access-1", cursor=None, count=100)
    client.transactions_sync("access-1", cursor="c1", count=100)

    assert "cursor" not in bodies[0]
    assert bodies[1]["cursor"] == "c1"
    assert first.next_cursor == "c1"
    assert first.has_more is True
    assert [r["transaction_id"] for r in first.removed] == ["r"]


@pytest.mark.parametrize(
    ("status", "payload", "transient"),
    [
        (429, {"error_type": "RATE_LIMIT_EXCEEDED", "error_code": "RATE_LIMIT"}, True),
        (400, {"error_type": "ITEM_ERROR", "error_code": "PRODUCT_NOT_READY"}, True),
        (500, {"error_type": "API_ERROR", "error_code": "INTERNAL_SERVER_ERROR"}, True),
        (400, {"error_type": "ITEM_ERROR", "error_code": "ITEM_LOGIN_REQUIRED"}, False),
        (400, {"error_type": "TRANSACTIONS_ERROR", "error_code": MUTATION_DURING_PAGINATION}, False),  # noqa: E501
    ],
)
def test_error_mapping(status: int, payload: dict, transient: bool):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={**payload, "error_message": "nope"})

    with pytest.raises(ProviderError) as excinfo:
        _client(handler).transactions_sync("access-1", cursor=None, count=10)

    err = excinfo.value
    assert err.status_code == status
    assert err.error_code == payload["error_code"]
    assert err.transient is transient
    assert str(err) == f"nope [{payload['error_code']}]"


def test_non_json_error_body_still_maps():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    with pytest.raises(ProviderError) as excinfo:
        _client(handler).transactions_sync("access-1", cursor=None, count=10)

    assert excinfo.value.transient
    assert "HTTP 502" in excinfo.value.message


def test_timeout_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as excinfo:
        _client(handler).transactions_sync("access-1", cursor=None, count=10)

    assert excinfo.value.transient
    assert excinfo.value.error_type == "TIMEOUT"


def test_is_transient_rules():
    assert is_transient(503, None, None)
    assert not is_transient(400, "INVALID_REQUEST", "INVALID_FIELD")
    assert is_transient(None, "API_ERROR", None)


def test_from_settings_requires_credentials():
    with pytest.raises(ProviderError):
        PlaidClient.from_settings(Settings())

    client = PlaidClient.from_settings(
        Settings(plaid_client_id="cid", plaid_secret="shh", plaid_env="production")
    )
    try:
        assert client._http.base_url.host == "production.plaid.com"
    finally:
        client.close()
