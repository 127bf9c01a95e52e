# ruff: noqa: I001
"""CLI for the ``ledger_sync`` package.

A Typer app over the same operations the HTTP server exposes. Environment
variables (``DATABASE_URL``, ``PLAID_CLIENT_ID``/``PLAID_SECRET``, the
``LEDGER_*`` tunables and, for the OpenAI generalizer, ``OPENAI_API_KEY``) are
loaded from a local ``.env`` using ``python-dotenv`` before any command runs.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .config import Settings
from .errors import LedgerSyncError
from .logging_setup import configure_logging


# ---- Small module-level helpers used by CLI commands -------------------------


def _settings(database_url: str | None) -> Settings:
    from dataclasses import replace

    settings = Settings.from_env()
    if database_url:
        settings = replace(settings, database_url=database_url)
    return settings


def _emit(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, sort_keys=True))


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    raise typer.Exit(1)


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Sync bank transactions from the provider and categorize them. "
        "Loads DATABASE_URL and provider credentials from a local .env."
    ),
)

# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults).
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
USER_ID_OPTION: OptionInfo = typer.Option(..., "--user-id", help="Owner of the data.")


@app.command("sync")
def sync_cmd(
    user_id: Annotated[str, USER_ID_OPTION],
    bank_account_id: str = typer.Option(..., help="Bank account to sync."),
    *,
    full: bool = typer.Option(
        False, "--full", help="Full backfill from --start-date instead of a delta sync."
    ),
    start_date: str | None = typer.Option(
        None, help="Backfill start (YYYY-MM-DD); defaults to January 1st of this year."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Sync one bank account and print ``{mode, count}``."""

    from .sync import build_orchestrator

    try:
        orchestrator = build_orchestrator(_settings(database_url))
        result = orchestrator.sync_account(
            user_id, bank_account_id, full_sync=full, start_date=start_date
        )
    except LedgerSyncError as e:
        _fail(str(e))
        return
    _emit({"ok": True, "mode": result.mode, "count": result.count, "removed": result.removed})


@app.command("seed-global-rules")
def seed_global_rules_cmd(
    file: Path | None = typer.Option(
        None, help="Vendor map JSON; defaults to the bundled global_vendor_map.v1.json."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Replace the global vendor map with the contents of ``--file``."""

    from .ingest.seed_global_rules import DEFAULT_SEED_FILE, reseed_global_rules

    count = reseed_global_rules(
        database_url=_settings(database_url).database_url, file=file or DEFAULT_SEED_FILE
    )
    _emit({"ok": True, "rules": count})


@app.command("generate-property-rules")
def generate_property_rules_cmd(
    user_id: Annotated[str, USER_ID_OPTION],
    property_id: str = typer.Option(..., help="Property the rules are scoped to."),
    file: Path = typer.Option(..., help="Property profile JSON (camelCase keys)."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Regenerate the property-derived rules for one property."""

    from pydantic import ValidationError

    from ledger_db.client import session_scope

    from .property_rules import PropertyProfile, generate_rules_for_property

    try:
        profile = PropertyProfile.model_validate_json(file.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        _fail(f"could not read property profile {file}: {e}")
        return
    with session_scope(database_url=_settings(database_url).database_url) as session:
        result = generate_rules_for_property(
            session, user_id=user_id, property_id=property_id, profile=profile
        )
    _emit({"ok": True, "generated": len(result.rules), "deleted": result.deleted})


@app.command("learn-rule")
def learn_rule_cmd(
    user_id: Annotated[str, USER_ID_OPTION],
    description: str = typer.Option(..., help="Transaction description to learn from."),
    l0: str = typer.Option(..., help="Top level (Income, Expense, ...)."),
    l1: str = typer.Option(..., help="Second level."),
    l2: str = typer.Option(..., help="Third level (tax line)."),
    l3: str | None = typer.Option(None, help="Fourth level."),
    cost_center: str | None = typer.Option(None, help="Optional cost center."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Store a user-correction rule for ``description``."""

    from ledger_db.client import session_scope

    from .generalize import build_generalizer
    from .rules import learn_user_correction

    settings = _settings(database_url)
    with session_scope(database_url=settings.database_url) as session:
        rule = learn_user_correction(
            session,
            user_id=user_id,
            description=description,
            hierarchy={"l0": l0, "l1": l1, "l2": l2, "l3": l3},
            cost_center=cost_center,
            generalizer=build_generalizer(settings.generalizer, model=settings.generalizer_model),
        )
    _emit({"ok": True, "ruleId": rule.rule_id, "matchKey": rule.match_key})


@app.command("recategorize")
def recategorize_cmd(
    user_id: Annotated[str, USER_ID_OPTION],
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Re-run categorization over transactions awaiting review."""

    from .persistence import LedgerStore
    from .sync import build_engine, recategorize_for_review

    settings = _settings(database_url)
    result = recategorize_for_review(
        LedgerStore(database_url=settings.database_url),
        build_engine(settings),
        user_id,
        batch_size=settings.max_batch_size,
    )
    _emit(
        {
            "ok": True,
            "examined": result.examined,
            "updated": result.updated,
            "approved": result.approved,
        }
    )


@app.command("serve")
def serve_cmd(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8000, help="Bind port."),
) -> None:
    """Run the HTTP API with uvicorn."""

    import uvicorn

    from .server import create_app

    uvicorn.run(create_app(Settings.from_env()), host=host, port=port, log_config=None)


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()

    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


def main() -> None:
    """Console-script entry point (``ledger-sync``)."""

    app()


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    main()
