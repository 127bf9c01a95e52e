"""Pytest configuration for test isolation.

Engines are cached per database URL inside ``ledger_db.client``. Each test
bootstraps its own SQLite file under ``tmp_path``, so the cache is disposed
after every test to release file handles. Environment variables the settings
layer reads are cleared so a developer's local ``.env`` cannot leak in.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from ledger_db.client import dispose_engines

_SETTINGS_ENV = (
    "DATABASE_URL",
    "PLAID_CLIENT_ID",
    "PLAID_SECRET",
    "PLAID_ENV",
    "LEDGER_SYNC_PAGE_SIZE",
    "LEDGER_MAX_BATCH_SIZE",
    "LEDGER_REVIEW_THRESHOLD",
    "LEDGER_PROVIDER_MAX_ATTEMPTS",
    "LEDGER_SYNC_LEASE_TTL_SECONDS",
    "LEDGER_GENERALIZER",
    "LEDGER_GENERALIZER_MODEL",
    "LEDGER_SYNC_MAX_WORKERS",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    yield
    dispose_engines()


@pytest.fixture()
def db_url(tmp_path) -> str:
    from tests.helpers.db import bootstrap_sqlite_db

    return bootstrap_sqlite_db(tmp_path / "ledger.sqlite3")
