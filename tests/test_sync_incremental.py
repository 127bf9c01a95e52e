import threading
from datetime import UTC, datetime, timedelta

import pytest

from ledger_sync.config import Settings
from ledger_sync.engine import RuleResolutionEngine
from ledger_sync.errors import ProviderError, SyncCancelledError, SyncInProgressError
from ledger_sync.hierarchy import CategoryHierarchy
from ledger_sync.lease import LeaseManager, lease_key_for
from ledger_sync.persistence import LedgerStore
from ledger_sync.plaid_client import MUTATION_DURING_PAGINATION
from ledger_sync.sync import SyncOrchestrator

from tests.helpers.db import ACCOUNT, ITEM, USER, seed_account, seed_global_rule, stored_ids
from tests.helpers.fake_provider import FakeProvider, delta, plaid_tx

NOW = datetime(2025, 6, 15, 9, 30, tzinfo=UTC)
RIDESHARE = CategoryHierarchy("Expense", "Travel", "Line 6: Auto & Travel", "Taxi & Rideshare")


def _orchestrator(
    db_url: str,
    provider: FakeProvider,
    *,
    sleeps: list[float] | None = None,
    leases: LeaseManager | None = None,
    **settings,
) -> SyncOrchestrator:
    slept = sleeps if sleeps is not None else []
    return SyncOrchestrator(
        store=LedgerStore(database_url=db_url),
        provider=provider,
        engine=RuleResolutionEngine(),
        leases=leases or LeaseManager(database_url=db_url),
        settings=Settings(database_url=db_url, **settings),
        sleep=slept.append,
        clock=lambda: NOW,
    )


def _cursor(db_url: str) -> str | None:
    account = LedgerStore(database_url=db_url).get_account(USER, ACCOUNT)
    assert account is not None
    return account.sync_state.cursor


def _transient(code: str = "RATE_LIMIT_EXCEEDED") -> ProviderError:
    return ProviderError("slow down", error_code=code, status_code=429, transient=True)


def test_incremental_categorizes_and_advances_cursor(db_url: str):
    seed_account(db_url)
    seed_global_rule(db_url, "LYFT", RIDESHARE)
    provider = FakeProvider(
        deltas={None: delta(added=[plaid_tx("t1", 12.5, "LYFT RIDE 0412")], next_cursor="c1")}
    )

    result = _orchestrator(db_url, provider).sync_account(USER, ACCOUNT)

    assert (result.mode, result.count, result.pages, result.removed) == ("incremental", 1, 1, 0)
    assert _cursor(db_url) == "c1"
    [tx] = LedgerStore(database_url=db_url).needs_review(USER)
    assert tx.category_hierarchy == RIDESHARE
    assert tx.category_source == "global-vendor-map"
    assert tx.amount < 0

    state = LedgerStore(database_url=db_url).get_account(USER, ACCOUNT).sync_state
    assert state.mode == "incremental"
    assert state.last_sync_at is not None


def test_removed_transaction_is_not_resurrected(db_url: str):
    seed_account(db_url)
    first = FakeProvider(
        deltas={
            None: delta(
                added=[plaid_tx("t1", 5, "A"), plaid_tx("t2", 6, "B")], next_cursor="c1"
            )
        }
    )
    _orchestrator(db_url, first).sync_account(USER, ACCOUNT)

    second = FakeProvider(
        deltas={
            "c1": delta(modified=[plaid_tx("t2", 7, "B")], removed=["t1"], next_cursor="c2"),
        }
    )
    result = _orchestrator(db_url, second).sync_account(USER, ACCOUNT)
    assert (result.count, result.removed) == (1, 1)
    assert stored_ids(db_url) == {"t2"}

    third = FakeProvider(deltas={"c2": delta(next_cursor="c2")})
    assert _orchestrator(db_url, third).sync_account(USER, ACCOUNT).count == 0
    assert stored_ids(db_url) == {"t2"}


def test_removal_wins_over_upsert_in_the_same_page(db_url: str):
    seed_account(db_url)
    provider = FakeProvider(
        deltas={None: delta(added=[plaid_tx("t1", 5, "A")], removed=["t1"], next_cursor="c1")}
    )

    _orchestrator(db_url, provider).sync_account(USER, ACCOUNT)

    assert stored_ids(db_url) == set()


def test_failure_mid_run_keeps_committed_pages_and_resumes(db_url: str):
    seed_account(db_url)
    pages = {
        None: delta(added=[plaid_tx("t1", 5, "A")], next_cursor="c1", has_more=True),
        "c1": delta(
            added=[plaid_tx("t2", 6, "B")],
            # Replays a row from the committed page.
            modified=[plaid_tx("t1", 5, "A")],
            next_cursor="c2",
        ),
    }
    broken = FakeProvider(
        deltas=pages,
        fail_on={2: ProviderError("login required", error_code="ITEM_LOGIN_REQUIRED")},
    )

    with pytest.raises(ProviderError):
        _orchestrator(db_url, broken).sync_account(USER, ACCOUNT)

    assert stored_ids(db_url) == {"t1"}
    assert _cursor(db_url) == "c1"

    healthy = FakeProvider(deltas=pages)
    result = _orchestrator(db_url, healthy).sync_account(USER, ACCOUNT)

    assert healthy.cursors_requested() == ["c1"]
    assert result.count == 2
    assert stored_ids(db_url) == {"t1", "t2"}
    assert _cursor(db_url) == "c2"


def test_transient_error_is_retried_with_backoff(db_url: str):
    seed_account(db_url)
    sleeps: list[float] = []
    provider = FakeProvider(
        deltas={None: delta(added=[plaid_tx("t1", 5, "A")], next_cursor="c1")},
        fail_on={1: _transient()},
    )

    result = _orchestrator(db_url, provider, sleeps=sleeps).sync_account(USER, ACCOUNT)

    assert result.count == 1
    assert len(provider.calls) == 2
    assert len(sleeps) == 1
    assert 0.4 <= sleeps[0] <= 0.6


def test_retry_budget_is_bounded(db_url: str):
    seed_account(db_url)
    sleeps: list[float] = []
    provider = FakeProvider(
        deltas={None: delta(next_cursor="c1")},
        fail_on={1: _transient(), 2: _transient("PRODUCT_NOT_READY"), 3: _transient()},
    )

    with pytest.raises(ProviderError) as excinfo:
        _orchestrator(db_url, provider, sleeps=sleeps, provider_max_attempts=3).sync_account(
            USER, ACCOUNT
        )

    assert excinfo.value.transient
    assert len(provider.calls) == 3
    assert len(sleeps) == 2
    assert 1.6 <= sleeps[1] <= 2.4
    assert _cursor(db_url) is None


def test_permanent_error_is_not_retried(db_url: str):
    seed_account(db_url)
    sleeps: list[float] = []
    provider = FakeProvider(
        deltas={None: delta(next_cursor="c1")},
        fail_on={1: ProviderError("bad token", error_code="INVALID_ACCESS_TOKEN")},
    )

    with pytest.raises(ProviderError):
        _orchestrator(db_url, provider, sleeps=sleeps).sync_account(USER, ACCOUNT)

    assert len(provider.calls) == 1
    assert sleeps == []


def test_mutation_during_pagination_restarts_from_starting_cursor(db_url: str):
    seed_account(db_url)
    provider = FakeProvider(
        deltas={
            None: delta(added=[plaid_tx("t1", 5, "A")], next_cursor="c1", has_more=True),
            "c1": delta(added=[plaid_tx("t2", 6, "B")], next_cursor="c2"),
        },
        fail_on={2: ProviderError("restart", error_code=MUTATION_DURING_PAGINATION)},
    )

    result = _orchestrator(db_url, provider).sync_account(USER, ACCOUNT)

    assert provider.cursors_requested() == [None, "c1", None, "c1"]
    assert result.count == 2
    assert stored_ids(db_url) == {"t1", "t2"}
    assert _cursor(db_url) == "c2"


def test_mutation_restarts_are_bounded(db_url: str):
    seed_account(db_url)
    mutation = ProviderError("restart", error_code=MUTATION_DURING_PAGINATION)
    provider = FakeProvider(
        deltas={None: delta(next_cursor="c1")},
        fail_on={n: mutation for n in range(1, 10)},
    )

    with pytest.raises(ProviderError):
        _orchestrator(db_url, provider).sync_account(USER, ACCOUNT)

    # One initial pass plus three restarts.
    assert len(provider.calls) == 4


class _CancelAfter:
    def __init__(self, checks: int) -> None:
        self.remaining = checks

    def is_set(self) -> bool:
        self.remaining -= 1
        return self.remaining < 0


def test_cancellation_between_pages(db_url: str):
    seed_account(db_url)
    provider = FakeProvider(
        deltas={
            None: delta(added=[plaid_tx("t1", 5, "A")], next_cursor="c1", has_more=True),
            "c1": delta(added=[plaid_tx("t2", 6, "B")], next_cursor="c2"),
        }
    )
    orch = _orchestrator(db_url, provider)

    with pytest.raises(SyncCancelledError):
        orch.sync_account(USER, ACCOUNT, cancel=_CancelAfter(1))

    assert stored_ids(db_url) == {"t1"}
    assert _cursor(db_url) == "c1"

    # The lease was released, so a fresh run can pick up from the saved cursor.
    stop = threading.Event()
    stop.set()
    with pytest.raises(SyncCancelledError):
        orch.sync_account(USER, ACCOUNT, cancel=stop)
    assert orch.sync_account(USER, ACCOUNT).count == 1


def test_concurrent_run_is_refused(db_url: str):
    seed_account(db_url)
    leases = LeaseManager(database_url=db_url)
    assert leases.acquire(lease_key_for(USER, ACCOUNT), "someone-else")
    provider = FakeProvider(deltas={None: delta(next_cursor="c1")})

    with pytest.raises(SyncInProgressError):
        _orchestrator(db_url, provider).sync_account(USER, ACCOUNT)

    assert provider.calls == []


class _LeaseClock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


def _three_pages() -> FakeProvider:
    return FakeProvider(
        deltas={
            None: delta(added=[plaid_tx("t1", 5, "A")], next_cursor="c1", has_more=True),
            "c1": delta(added=[plaid_tx("t2", 6, "B")], next_cursor="c2", has_more=True),
            "c2": delta(added=[plaid_tx("t3", 7, "C")], next_cursor="c3"),
        }
    )


def test_long_run_keeps_its_lease_past_the_ttl(db_url: str):
    seed_account(db_url)
    clock = _LeaseClock()
    leases = LeaseManager(database_url=db_url, ttl_seconds=60, clock=clock)
    key = lease_key_for(USER, ACCOUNT)
    provider = _three_pages()
    original = provider.transactions_sync
    rival_won: list[bool] = []

    def slow_page(*args, **kwargs):
        # Each page takes 40s; three pages outlast a single 60s TTL.
        clock.now += timedelta(seconds=40)
        rival_won.append(leases.acquire(key, "rival"))
        return original(*args, **kwargs)

    provider.transactions_sync = slow_page  # type: ignore[method-assign]
    result = _orchestrator(db_url, provider, leases=leases).sync_account(USER, ACCOUNT)

    assert clock.now - NOW > timedelta(seconds=60)
    assert rival_won == [False, False, False]
    assert (result.count, result.pages) == (3, 3)
    assert _cursor(db_url) == "c3"


def test_run_aborts_when_its_lease_was_taken_over(db_url: str):
    seed_account(db_url)
    clock = _LeaseClock()
    leases = LeaseManager(database_url=db_url, ttl_seconds=60, clock=clock)
    key = lease_key_for(USER, ACCOUNT)
    provider = _three_pages()
    original = provider.transactions_sync

    def stalled_page(*args, **kwargs):
        if len(provider.calls) == 0:
            clock.now += timedelta(seconds=61)
            assert leases.acquire(key, "rival")
        return original(*args, **kwargs)

    provider.transactions_sync = stalled_page  # type: ignore[method-assign]
    with pytest.raises(SyncInProgressError):
        _orchestrator(db_url, provider, leases=leases).sync_account(USER, ACCOUNT)

    # The first page was committed before the loss was noticed; nothing after it.
    assert stored_ids(db_url) == {"t1"}
    assert _cursor(db_url) == "c1"
    assert provider.cursors_requested() == [None]
    # The rival keeps its lease.
    assert leases.acquire(key, "third") is False


def test_sync_item_skips_disabled_accounts_and_reports_failures(db_url: str):
    seed_account(db_url)
    seed_account(db_url, bank_account_id="bank-paused", auto_sync_enabled=False)
    seed_account(db_url, bank_account_id="bank-no-token", access_token=None)
    seed_account(db_url, bank_account_id="bank-other-item", item_id="item-2")
    provider = FakeProvider(
        deltas={None: delta(added=[plaid_tx("t1", 5, "A")], next_cursor="c1")}
    )

    outcomes = _orchestrator(db_url, provider, sync_max_workers=1).sync_item(ITEM)

    by_account = {o.bank_account_id: o for o in outcomes}
    assert set(by_account) == {ACCOUNT, "bank-no-token"}
    assert by_account[ACCOUNT].result is not None
    assert by_account[ACCOUNT].result.count == 1
    assert by_account["bank-no-token"].error == "No access token found for this bank account"


def test_recategorize_picks_up_new_rules(db_url: str):
    seed_account(db_url)
    provider = FakeProvider(
        deltas={
            None: delta(
                added=[plaid_tx("t1", 12, "LYFT RIDE"), plaid_tx("t2", 30, "MYSTERY SHOP")],
                next_cursor="c1",
            )
        }
    )
    orch = _orchestrator(db_url, provider)
    orch.sync_account(USER, ACCOUNT)

    seed_global_rule(db_url, "LYFT", RIDESHARE)
    result = orch.recategorize_for_review(USER)

    assert (result.examined, result.updated, result.approved) == (2, 1, 0)
    review = LedgerStore(database_url=db_url).needs_review(USER)
    rows = {t.provider_transaction_id: t for t in review}
    assert rows["t1"].category_hierarchy == RIDESHARE
    assert rows["t1"].confidence == 0.9
    assert rows["t2"].category_source == "fallback"
