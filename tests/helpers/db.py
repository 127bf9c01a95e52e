"""DB helpers for tests: bootstrap a temporary SQLite DB and seed fixtures."""

from __future__ import annotations

import os
from pathlib import Path

from ledger_db import Base
from ledger_db.client import get_engine, session_scope

from ledger_sync.hierarchy import CategoryHierarchy
from ledger_sync.persistence import list_transactions, save_bank_account
from ledger_sync.rules import make_rule, upsert_rules

USER = "user-1"
ACCOUNT = "bank-1"
PROVIDER_ACCOUNT = "plaid-acc-1"
ITEM = "item-1"


def bootstrap_sqlite_db(db_file: Path, *, set_default_env: bool = False) -> str:
    """Create a SQLite database file, initialize schema, and return the URL.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url=url)
    Base.metadata.create_all(bind=engine)
    if set_default_env:
        os.environ.setdefault("DATABASE_URL", url)
    return url


def seed_account(
    database_url: str,
    *,
    user_id: str = USER,
    bank_account_id: str = ACCOUNT,
    access_token: str | None = "access-sandbox-1",
    item_id: str | None = ITEM,
    provider_account_id: str | None = PROVIDER_ACCOUNT,
    auto_sync_enabled: bool = True,
) -> None:
    with session_scope(database_url=database_url) as session:
        save_bank_account(
            session,
            user_id=user_id,
            bank_account_id=bank_account_id,
            access_token=access_token,
            item_id=item_id,
            provider_account_id=provider_account_id,
            account_name="Operating Checking",
            institution_name="Sandbox Bank",
            auto_sync_enabled=auto_sync_enabled,
        )


def seed_global_rule(database_url: str, keyword: str, hierarchy: CategoryHierarchy) -> None:
    with session_scope(database_url=database_url) as session:
        upsert_rules(
            session,
            [
                make_rule(
                    user_id=None,
                    match_key=keyword,
                    hierarchy=hierarchy,
                    source="global-vendor-map",
                )
            ],
        )


def stored_ids(database_url: str, *, user_id: str = USER) -> set[str]:
    with session_scope(database_url=database_url) as session:
        return {t.provider_transaction_id for t in list_transactions(session, user_id=user_id)}
