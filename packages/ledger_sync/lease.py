"""Store-backed single-flight lease per bank account.

A lease row ``(lease_key, owner, acquired_at, expires_at)`` marks a running
sync. Acquisition is one atomic ``INSERT .. ON CONFLICT DO UPDATE .. WHERE
expires_at < now``: it succeeds when no row exists or the existing lease has
expired, and is a no-op otherwise. Reading the owner back tells the caller
whether it won. A run longer than the TTL must ``renew`` as it goes; a failed
renewal means another owner took over. Release deletes the row only when the
caller still owns it.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from ledger_db.client import session_scope, upsert_statement
from ledger_db.models.ledger import SyncLease
from sqlalchemy import delete, select, update

from .errors import SyncInProgressError
from .logging_setup import get_logger

_logger = get_logger("ledger_sync.lease")


def lease_key_for(user_id: str, bank_account_id: str) -> str:
    return f"sync:{user_id}:{bank_account_id}"


def new_owner_id() -> str:
    return f"{os.getpid()}-{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LeaseManager:
    def __init__(
        self,
        *,
        database_url: str | None = None,
        ttl_seconds: int = 900,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.database_url = database_url
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def acquire(self, lease_key: str, owner: str) -> bool:
        now = self._clock()
        with session_scope(database_url=self.database_url) as s:
            stmt = upsert_statement(s, SyncLease).values(
                lease_key=lease_key,
                owner=owner,
                acquired_at=now,
                expires_at=now + self.ttl,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[SyncLease.lease_key],
                set_={
                    "owner": stmt.excluded.owner,
                    "acquired_at": stmt.excluded.acquired_at,
                    "expires_at": stmt.excluded.expires_at,
                },
                where=SyncLease.expires_at < now,
            )
            s.execute(stmt)
            holder = s.execute(
                select(SyncLease.owner).where(SyncLease.lease_key == lease_key)
            ).scalar_one_or_none()
        acquired = holder == owner
        _logger.debug(
            "lease:acquire key=%s owner=%s acquired=%s", lease_key, owner, acquired
        )
        return acquired

    def renew(self, lease_key: str, owner: str) -> bool:
        """Push ``expires_at`` to ``now + ttl`` if ``owner`` still holds the lease."""

        now = self._clock()
        with session_scope(database_url=self.database_url) as s:
            result = s.execute(
                update(SyncLease)
                .where(SyncLease.lease_key == lease_key, SyncLease.owner == owner)
                .values(expires_at=now + self.ttl)
            )
            renewed = bool(result.rowcount)
        if not renewed:
            _logger.warning("lease:lost key=%s owner=%s", lease_key, owner)
        return renewed

    def release(self, lease_key: str, owner: str) -> bool:
        with session_scope(database_url=self.database_url) as s:
            result = s.execute(
                delete(SyncLease).where(SyncLease.lease_key == lease_key, SyncLease.owner == owner)
            )
            released = bool(result.rowcount)
        if not released:
            _logger.warning("lease:release_noop key=%s owner=%s", lease_key, owner)
        return released

    @contextmanager
    def hold(self, lease_key: str, *, owner: str | None = None) -> Iterator[str]:
        """Hold ``lease_key`` for the duration of the block.

        Raises
        ------
        SyncInProgressError
            When another owner holds an unexpired lease.
        """

        me = owner or new_owner_id()
        if not self.acquire(lease_key, me):
            raise SyncInProgressError(lease_key)
        try:
            yield me
        finally:
            self.release(lease_key, me)


__all__ = ["LeaseManager", "lease_key_for", "new_owner_id"]
