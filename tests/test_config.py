import pytest

from ledger_sync.config import ConfigurationError, Settings


def test_defaults_from_empty_env():
    s = Settings.from_env({})
    assert s.database_url is None
    assert s.plaid_base_url == "https://sandbox.plaid.com"
    assert (s.page_size, s.max_batch_size, s.provider_max_attempts) == (500, 450, 3)
    assert s.review_threshold == 0.95
    assert s.generalizer == "heuristic"


def test_values_from_env():
    s = Settings.from_env(
        {
            "DATABASE_URL": "sqlite+pysqlite:///ledger.sqlite3",
            "PLAID_CLIENT_ID": "cid",
            "PLAID_SECRET": "shh",
            "PLAID_ENV": "Production",
            "LEDGER_SYNC_PAGE_SIZE": "100",
            "LEDGER_REVIEW_THRESHOLD": "0.9",
            "LEDGER_GENERALIZER": "openai",
            "LEDGER_SYNC_MAX_WORKERS": "",
        }
    )
    assert s.database_url == "sqlite+pysqlite:///ledger.sqlite3"
    assert s.plaid_base_url == "https://production.plaid.com"
    assert s.page_size == 100
    assert s.review_threshold == 0.9
    assert s.generalizer == "openai"
    assert s.sync_max_workers == 4


@pytest.mark.parametrize(
    "env",
    [
        {"PLAID_ENV": "staging"},
        {"LEDGER_SYNC_PAGE_SIZE": "lots"},
        {"LEDGER_MAX_BATCH_SIZE": "0"},
        {"LEDGER_REVIEW_THRESHOLD": "1.5"},
        {"LEDGER_REVIEW_THRESHOLD": "high"},
        {"LEDGER_GENERALIZER": "crystal-ball"},
    ],
)
def test_invalid_values_are_rejected(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_reads_process_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///x.sqlite3")
    assert Settings.from_env().database_url == "sqlite+pysqlite:///x.sqlite3"
