"""Sync orchestrator: provider pages → normalize → categorize → persist.

Two modes:

``backfill`` (full rebuild)
    Offset-paginated ``transactions_get`` over ``[start_date, today]``. Each
    page is categorized and written in one transaction (statements chunked
    below ``max_batch_size``) before the next page is requested. On
    completion the account's cursor is reset to ``None`` and
    ``last_sync_at`` is stamped.

``incremental`` (default)
    Cursor-paginated ``transactions_sync``. Every page commits its upserts,
    its removals and its ``next_cursor`` together, so the stored cursor is
    never ahead of committed data and a crash replays at most one page
    (idempotent by id).

At most one run per bank account is in flight, enforced with a store-backed
lease that is renewed before every page fetch; losing it aborts the run.
Transient provider failures are retried with backoff; anything else aborts
the run.
"""

from __future__ import annotations

import random
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any, Protocol, TypeVar

from .config import Settings
from .engine import RuleResolutionEngine
from .errors import (
    BankAccountNotFoundError,
    InvalidSyncRequestError,
    MissingAccessTokenError,
    ProviderError,
    SyncCancelledError,
    SyncInProgressError,
)
from .fanout import SKIP, fan_out
from .generalize import build_generalizer
from .lease import LeaseManager, lease_key_for
from .logging_setup import get_logger
from .models import BankAccountRecord, CanonicalTransaction, SyncResult
from .normalize import normalize_transaction
from .persistence import LedgerStore, chunked
from .plaid_client import MUTATION_DURING_PAGINATION, PlaidClient, TransactionsProvider
from .rules import RuleContext

_logger = get_logger("ledger_sync.sync")

T = TypeVar("T")

# ---- Tunables ----------------------------------------------------------------

_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20
# Upper bound on backfill pages; guards against a provider whose total keeps
# growing while we page.
_MAX_BACKFILL_PAGES: int = 2000
_MAX_MUTATION_RESTARTS: int = 3

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


def resolve_start_date(raw: str | None, *, today: date) -> date:
    """Parse ``YYYY-MM-DD``; anything else means January 1st of this year."""

    if raw and _ISO_DATE_RE.match(raw.strip()):
        try:
            return date.fromisoformat(raw.strip())
        except ValueError:
            pass
    return date(today.year, 1, 1)


@dataclass(frozen=True, slots=True)
class ItemSyncOutcome:
    user_id: str
    bank_account_id: str
    result: SyncResult | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class _LeaseHandle:
    key: str
    owner: str


@dataclass(frozen=True, slots=True)
class RecategorizeResult:
    examined: int
    updated: int
    approved: int


class SyncOrchestrator:
    """Drive one bank account's sync from provider to store.

    Parameters
    ----------
    store:
        Persistence adapter; each provider page is committed on its own.
    provider:
        Bank-data provider client.
    engine:
        Rule resolution engine used for every normalized transaction.
    leases:
        Single-flight lease manager.
    settings:
        Page size, batch cap, retry budget and fan-out width.
    sleep, clock:
        Injectable for tests.
    """

    def __init__(
        self,
        *,
        store: LedgerStore,
        provider: TransactionsProvider,
        engine: RuleResolutionEngine,
        leases: LeaseManager,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.engine = engine
        self.leases = leases
        self.settings = settings or Settings()
        self._sleep = sleep
        self._clock = clock

    # ---- Public operations ---------------------------------------------------

    def sync_account(
        self,
        user_id: str,
        bank_account_id: str,
        *,
        full_sync: bool = False,
        start_date: str | None = None,
        cancel: CancelToken | None = None,
    ) -> SyncResult:
        if not user_id or not bank_account_id:
            raise InvalidSyncRequestError("userId and bankAccountId are required")

        account = self.store.get_account(user_id, bank_account_id)
        if account is None:
            raise BankAccountNotFoundError(user_id, bank_account_id)
        if not account.access_token:
            raise MissingAccessTokenError(bank_account_id)

        mode = "backfill" if full_sync else "incremental"
        key = lease_key_for(user_id, bank_account_id)
        with self.leases.hold(key) as owner:
            lease = _LeaseHandle(key, owner)
            ctx = self.store.load_rule_context(user_id)
            _logger.info(
                "sync:start user_id=%s bank_account_id=%s mode=%s rules=%d",
                user_id,
                bank_account_id,
                mode,
                ctx.size,
            )
            t0 = time.perf_counter()
            if full_sync:
                result = self._backfill(
                    account, ctx, start_date=start_date, cancel=cancel, lease=lease
                )
            else:
                result = self._incremental(account, ctx, cancel=cancel, lease=lease)
            _logger.info(
                "sync:done user_id=%s bank_account_id=%s mode=%s count=%d pages=%d "
                "removed=%d latency_ms=%.2f",
                user_id,
                bank_account_id,
                result.mode,
                result.count,
                result.pages,
                result.removed,
                (time.perf_counter() - t0) * 1000.0,
            )
            return result

    def sync_item(self, item_id: str) -> list[ItemSyncOutcome]:
        """Incrementally sync every auto-sync account linked to a provider item."""

        accounts = self.store.accounts_for_item(item_id)

        def _one(account: BankAccountRecord) -> ItemSyncOutcome | object:
            if not account.auto_sync_enabled:
                _logger.info(
                    "sync:item_skip item_id=%s bank_account_id=%s reason=auto_sync_disabled",
                    item_id,
                    account.bank_account_id,
                )
                return SKIP
            try:
                result = self.sync_account(account.user_id, account.bank_account_id)
            except Exception as e:  # noqa: BLE001 - reported per account
                _logger.error(
                    "sync:item_account_failed item_id=%s bank_account_id=%s error=%s",
                    item_id,
                    account.bank_account_id,
                    e.__class__.__name__,
                )
                return ItemSyncOutcome(account.user_id, account.bank_account_id, error=str(e))
            return ItemSyncOutcome(account.user_id, account.bank_account_id, result=result)

        outcomes: list[ItemSyncOutcome] = fan_out(
            accounts, _one, max_workers=max(1, self.settings.sync_max_workers)
        )
        _logger.info(
            "sync:item_done item_id=%s accounts=%d synced=%d failed=%d",
            item_id,
            len(accounts),
            sum(1 for o in outcomes if o.error is None),
            sum(1 for o in outcomes if o.error is not None),
        )
        return outcomes

    def recategorize_for_review(self, user_id: str) -> RecategorizeResult:
        return recategorize_for_review(
            self.store,
            self.engine,
            user_id,
            batch_size=self.settings.max_batch_size,
        )

    # ---- Modes ---------------------------------------------------------------

    def _backfill(
        self,
        account: BankAccountRecord,
        ctx: RuleContext,
        *,
        start_date: str | None,
        cancel: CancelToken | None,
        lease: _LeaseHandle,
    ) -> SyncResult:
        today = self._clock().date()
        start = resolve_start_date(start_date, today=today)
        token = account.access_token or ""
        offset = 0
        saved = 0
        pages = 0
        while True:
            if pages >= _MAX_BACKFILL_PAGES:
                _logger.warning(
                    "sync:backfill_page_ceiling bank_account_id=%s pages=%d offset=%d",
                    account.bank_account_id,
                    pages,
                    offset,
                )
                break
            self._before_page(account, cancel=cancel, lease=lease)
            page = self._fetch_with_retry(
                "transactions_get",
                lambda: self.provider.transactions_get(
                    token,
                    start_date=start,
                    end_date=today,
                    account_id=account.provider_account_id,
                    offset=offset,
                    count=self.settings.page_size,
                ),
            )
            if not page.transactions:
                break
            pages += 1
            written, _ = self.store.commit_page(
                account.user_id,
                account.bank_account_id,
                upserts=self._prepare(page.transactions, account, ctx),
                batch_size=self.settings.max_batch_size,
            )
            saved += written
            offset += len(page.transactions)
            _logger.info(
                "sync:page_committed mode=backfill page=%d upserted=%d offset=%d total=%d",
                pages,
                written,
                offset,
                page.total_transactions,
            )
            # Total is re-read on every page so a growing history keeps paging.
            if offset >= page.total_transactions:
                break

        self.store.finish_backfill(account.user_id, account.bank_account_id, at=self._clock())
        return SyncResult(mode="backfill", count=saved, pages=pages)

    def _incremental(
        self,
        account: BankAccountRecord,
        ctx: RuleContext,
        *,
        cancel: CancelToken | None,
        lease: _LeaseHandle,
    ) -> SyncResult:
        start_cursor = account.sync_state.cursor
        restarts = 0
        while True:
            try:
                return self._incremental_pass(
                    account, ctx, start_cursor, cancel=cancel, lease=lease
                )
            except ProviderError as e:
                if e.error_code != MUTATION_DURING_PAGINATION or restarts >= _MAX_MUTATION_RESTARTS:
                    raise
                restarts += 1
                _logger.warning(
                    "sync:restart_pagination bank_account_id=%s restart=%d",
                    account.bank_account_id,
                    restarts,
                )

    def _incremental_pass(
        self,
        account: BankAccountRecord,
        ctx: RuleContext,
        start_cursor: str | None,
        *,
        cancel: CancelToken | None,
        lease: _LeaseHandle,
    ) -> SyncResult:
        token = account.access_token or ""
        cursor = start_cursor
        upserted = 0
        removed = 0
        pages = 0
        has_more = True
        while has_more:
            self._before_page(account, cancel=cancel, lease=lease)
            page = self._fetch_with_retry(
                "transactions_sync",
                lambda: self.provider.transactions_sync(
                    token, cursor=cursor, count=self.settings.page_size
                ),
            )
            pages += 1
            changed = [*page.added, *page.modified]
            removed_ids = [
                str(r.get("transaction_id")) for r in page.removed if r.get("transaction_id")
            ]
            cursor = page.next_cursor or cursor
            has_more = page.has_more
            written, deleted = self.store.commit_page(
                account.user_id,
                account.bank_account_id,
                upserts=self._prepare(changed, account, ctx),
                removed_ids=removed_ids,
                cursor=cursor,
                batch_size=self.settings.max_batch_size,
            )
            upserted += written
            removed += deleted
            _logger.info(
                "sync:page_committed mode=incremental page=%d upserted=%d removed=%d has_more=%s",
                pages,
                written,
                deleted,
                has_more,
            )

        self.store.save_cursor(
            account.user_id, account.bank_account_id, cursor, last_sync_at=self._clock()
        )
        return SyncResult(mode="incremental", count=upserted, pages=pages, removed=removed)

    # ---- Helpers -------------------------------------------------------------

    @staticmethod
    def _belongs(raw: Mapping[str, Any], account: BankAccountRecord) -> bool:
        # Item-level responses can include sibling accounts of the same login.
        if not account.provider_account_id:
            return True
        other = raw.get("account_id")
        return other is None or other == account.provider_account_id

    def _prepare(
        self,
        raw_transactions: Sequence[Mapping[str, Any]],
        account: BankAccountRecord,
        ctx: RuleContext,
    ) -> list[CanonicalTransaction]:
        out: list[CanonicalTransaction] = []
        for raw in raw_transactions:
            if not self._belongs(raw, account):
                continue
            tx = normalize_transaction(
                raw, user_id=account.user_id, bank_account_id=account.bank_account_id
            )
            out.append(self.engine.apply(tx, ctx))
        return out

    @staticmethod
    def _check_cancel(cancel: CancelToken | None, account: BankAccountRecord) -> None:
        if cancel is not None and cancel.is_set():
            _logger.warning("sync:cancelled bank_account_id=%s", account.bank_account_id)
            raise SyncCancelledError(f"sync cancelled for bank account {account.bank_account_id}")

    def _before_page(
        self,
        account: BankAccountRecord,
        *,
        cancel: CancelToken | None,
        lease: _LeaseHandle,
    ) -> None:
        self._check_cancel(cancel, account)
        if not self.leases.renew(lease.key, lease.owner):
            raise SyncInProgressError(lease.key)

    def _backoff_delay(self, attempt_no: int) -> float:
        if attempt_no - 1 < len(_BACKOFF_SCHEDULE_SEC):
            base = _BACKOFF_SCHEDULE_SEC[attempt_no - 1]
        else:
            base = _BACKOFF_SCHEDULE_SEC[-1]
        jitter = base * _JITTER_PCT
        return max(0.0, base + random.uniform(-jitter, jitter))

    def _fetch_with_retry(self, label: str, fetch: Callable[[], T]) -> T:
        attempt = 1
        while True:
            t0 = time.perf_counter()
            try:
                return fetch()
            except ProviderError as e:
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if not e.transient or attempt >= self.settings.provider_max_attempts:
                    _logger.error(
                        "sync:fetch_failed_terminal call=%s attempt=%d latency_ms=%.2f code=%s",
                        label,
                        attempt,
                        dt_ms,
                        e.error_code,
                    )
                    raise
                _logger.warning(
                    "sync:fetch_retry call=%s attempt=%d latency_ms=%.2f code=%s",
                    label,
                    attempt,
                    dt_ms,
                    e.error_code,
                )
                self._sleep(self._backoff_delay(attempt))
                attempt += 1


def recategorize_for_review(
    store: LedgerStore,
    engine: RuleResolutionEngine,
    user_id: str,
    *,
    batch_size: int = 450,
) -> RecategorizeResult:
    """Re-run the engine over ``needs-review`` rows and keep improvements.

    A row is rewritten only when the new result has higher confidence or is
    newly approved; everything else is left as stored.
    """

    ctx = store.load_rule_context(user_id)
    candidates = store.needs_review(user_id)
    improved: list[CanonicalTransaction] = []
    for tx in candidates:
        updated = engine.apply(tx, ctx)
        if updated.confidence > tx.confidence or (
            updated.review_status == "approved" and tx.review_status != "approved"
        ):
            improved.append(updated)
    for batch in chunked(improved, batch_size):
        store.upsert_batch(batch)
    approved = sum(1 for t in improved if t.review_status == "approved")
    _logger.info(
        "sync:recategorize user_id=%s examined=%d updated=%d approved=%d",
        user_id,
        len(candidates),
        len(improved),
        approved,
    )
    return RecategorizeResult(len(candidates), len(improved), approved)


def build_engine(settings: Settings) -> RuleResolutionEngine:
    return RuleResolutionEngine(
        generalizer=build_generalizer(settings.generalizer, model=settings.generalizer_model),
        review_threshold=settings.review_threshold,
    )


def build_orchestrator(
    settings: Settings,
    *,
    provider: TransactionsProvider | None = None,
) -> SyncOrchestrator:
    """Wire an orchestrator from settings (real Plaid client unless given one)."""

    return SyncOrchestrator(
        store=LedgerStore(database_url=settings.database_url),
        provider=provider if provider is not None else PlaidClient.from_settings(settings),
        engine=build_engine(settings),
        leases=LeaseManager(
            database_url=settings.database_url, ttl_seconds=settings.lease_ttl_seconds
        ),
        settings=settings,
    )


__all__ = [
    "CancelToken",
    "ItemSyncOutcome",
    "RecategorizeResult",
    "SyncOrchestrator",
    "build_engine",
    "build_orchestrator",
    "recategorize_for_review",
    "resolve_start_date",
]
