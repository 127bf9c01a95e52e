"""Runtime settings read from the environment.

Entry points load a local ``.env`` (``python-dotenv``) before calling
``Settings.from_env()``; library code receives a ``Settings`` instance and
never reads the environment itself.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from .errors import LedgerSyncError

DEFAULT_REVIEW_THRESHOLD: float = 0.95

PLAID_BASE_URLS: dict[str, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


class ConfigurationError(LedgerSyncError):
    """Raised when an environment variable holds an unusable value."""


def _int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _threshold(env: Mapping[str, str]) -> float:
    raw = env.get("LEDGER_REVIEW_THRESHOLD")
    if raw is None or raw.strip() == "":
        return DEFAULT_REVIEW_THRESHOLD
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"LEDGER_REVIEW_THRESHOLD must be a number, got {raw!r}") from e
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError("LEDGER_REVIEW_THRESHOLD must be within [0, 1]")
    return value


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str | None = None
    plaid_client_id: str | None = None
    plaid_secret: str | None = None
    plaid_env: str = "sandbox"
    page_size: int = 500
    max_batch_size: int = 450
    review_threshold: float = DEFAULT_REVIEW_THRESHOLD
    provider_max_attempts: int = 3
    lease_ttl_seconds: int = 900
    generalizer: str = "heuristic"
    generalizer_model: str = "gpt-5-mini"
    sync_max_workers: int = 4

    @property
    def plaid_base_url(self) -> str:
        return PLAID_BASE_URLS[self.plaid_env]

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env
        plaid_env = (env.get("PLAID_ENV") or "sandbox").strip().lower()
        if plaid_env not in PLAID_BASE_URLS:
            raise ConfigurationError(
                f"PLAID_ENV must be one of {sorted(PLAID_BASE_URLS)}, got {plaid_env!r}"
            )
        generalizer = (env.get("LEDGER_GENERALIZER") or "heuristic").strip().lower()
        if generalizer not in {"heuristic", "openai"}:
            raise ConfigurationError(
                f"LEDGER_GENERALIZER must be 'heuristic' or 'openai', got {generalizer!r}"
            )
        return cls(
            database_url=env.get("DATABASE_URL") or None,
            plaid_client_id=env.get("PLAID_CLIENT_ID") or None,
            plaid_secret=env.get("PLAID_SECRET") or None,
            plaid_env=plaid_env,
            page_size=_int(env, "LEDGER_SYNC_PAGE_SIZE", 500),
            max_batch_size=_int(env, "LEDGER_MAX_BATCH_SIZE", 450),
            review_threshold=_threshold(env),
            provider_max_attempts=_int(env, "LEDGER_PROVIDER_MAX_ATTEMPTS", 3),
            lease_ttl_seconds=_int(env, "LEDGER_SYNC_LEASE_TTL_SECONDS", 900),
            generalizer=generalizer,
            generalizer_model=(env.get("LEDGER_GENERALIZER_MODEL") or "gpt-5-mini").strip(),
            sync_max_workers=_int(env, "LEDGER_SYNC_MAX_WORKERS", 4),
        )


__all__ = ["ConfigurationError", "DEFAULT_REVIEW_THRESHOLD", "Settings"]
