from datetime import UTC, date, datetime

import pytest

from ledger_sync.config import Settings
from ledger_sync.engine import RuleResolutionEngine
from ledger_sync.errors import (
    BankAccountNotFoundError,
    InvalidSyncRequestError,
    MissingAccessTokenError,
)
from ledger_sync.lease import LeaseManager
from ledger_sync.persistence import LedgerStore
from ledger_sync.sync import SyncOrchestrator, resolve_start_date

from tests.helpers.db import ACCOUNT, USER, seed_account, stored_ids
from tests.helpers.fake_provider import FakeProvider, plaid_tx

NOW = datetime(2025, 6, 15, 9, 30, tzinfo=UTC)


def _orchestrator(db_url: str, provider: FakeProvider, **settings) -> SyncOrchestrator:
    return SyncOrchestrator(
        store=LedgerStore(database_url=db_url),
        provider=provider,
        engine=RuleResolutionEngine(),
        leases=LeaseManager(database_url=db_url),
        settings=Settings(database_url=db_url, **settings),
        sleep=lambda _s: None,
        clock=lambda: NOW,
    )


def test_backfill_pages_until_total_and_resets_cursor(db_url: str):
    seed_account(db_url)
    store = LedgerStore(database_url=db_url)
    store.save_cursor(USER, ACCOUNT, "stale-cursor")
    provider = FakeProvider(
        history=[
            plaid_tx("t1", 12.50, "LYFT RIDE"),
            plaid_tx("t2", -1450.00, "ZELLE FROM JANE DOE"),
            plaid_tx("t3", 88.00, "HOME DEPOT"),
        ]
    )

    result = _orchestrator(db_url, provider, page_size=2).sync_account(
        USER, ACCOUNT, full_sync=True, start_date="2025-01-01"
    )

    assert (result.mode, result.count, result.pages) == ("backfill", 3, 2)
    assert [kw["offset"] for _, kw in provider.calls] == [0, 2]
    assert all(kw["count"] == 2 for _, kw in provider.calls)
    assert provider.calls[0][1]["start_date"] == date(2025, 1, 1)
    assert provider.calls[0][1]["end_date"] == NOW.date()
    assert provider.calls[0][1]["account_id"] == "plaid-acc-1"
    assert stored_ids(db_url) == {"t1", "t2", "t3"}

    state = store.get_account(USER, ACCOUNT).sync_state
    assert state.cursor is None
    assert state.mode == "full"
    assert state.last_sync_at is not None


def test_backfill_stops_on_empty_page_even_if_total_lies(db_url: str):
    seed_account(db_url)
    provider = FakeProvider(history=[plaid_tx("t1", 1, "A")], total=50)

    result = _orchestrator(db_url, provider, page_size=10).sync_account(
        USER, ACCOUNT, full_sync=True
    )

    assert result.count == 1
    assert len(provider.calls) == 2


def test_backfill_keeps_paging_when_total_grows(db_url: str):
    seed_account(db_url)
    provider = FakeProvider(history=[plaid_tx(f"t{i}", i, f"TX {i}") for i in range(1, 6)], total=2)

    original = provider.transactions_get

    def growing(*args, **kwargs):
        # History keeps arriving while we page: 4, then 5 transactions.
        provider.total = min(5, (provider.total or 0) + 2)
        return original(*args, **kwargs)

    provider.transactions_get = growing  # type: ignore[method-assign]
    result = _orchestrator(db_url, provider, page_size=2).sync_account(
        USER, ACCOUNT, full_sync=True
    )

    assert result.count == 5
    assert stored_ids(db_url) == {"t1", "t2", "t3", "t4", "t5"}


def test_backfill_skips_sibling_account_transactions(db_url: str):
    seed_account(db_url)
    provider = FakeProvider(
        history=[plaid_tx("mine", 5, "A"), plaid_tx("theirs", 5, "B", account_id="plaid-acc-2")]
    )

    result = _orchestrator(db_url, provider).sync_account(USER, ACCOUNT, full_sync=True)

    assert result.count == 1
    assert stored_ids(db_url) == {"mine"}


def test_rerunning_backfill_is_idempotent(db_url: str):
    seed_account(db_url)
    history = [plaid_tx("t1", 5, "A"), plaid_tx("t2", 6, "B")]

    _orchestrator(db_url, FakeProvider(history=history)).sync_account(USER, ACCOUNT, full_sync=True)
    again = _orchestrator(db_url, FakeProvider(history=history)).sync_account(
        USER, ACCOUNT, full_sync=True
    )

    assert again.count == 2
    assert stored_ids(db_url) == {"t1", "t2"}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-02-29", date(2024, 2, 29)),
        (None, date(2025, 1, 1)),
        ("02/01/2025", date(2025, 1, 1)),
        ("2025-13-01", date(2025, 1, 1)),
    ],
)
def test_resolve_start_date(raw, expected):
    assert resolve_start_date(raw, today=date(2025, 6, 15)) == expected


def test_request_validation_errors(db_url: str):
    seed_account(db_url, bank_account_id="no-token", access_token=None)
    orch = _orchestrator(db_url, FakeProvider())

    with pytest.raises(InvalidSyncRequestError):
        orch.sync_account("", ACCOUNT)
    with pytest.raises(BankAccountNotFoundError):
        orch.sync_account(USER, "missing")
    with pytest.raises(MissingAccessTokenError):
        orch.sync_account(USER, "no-token")
