"""HTTP surface (FastAPI).

Routes:

- ``POST /sync``                    - sync one bank account (backfill or incremental)
- ``POST /webhooks/plaid``          - provider webhook; fans out to the item's accounts
- ``POST /rules/corrections``       - learn a user-correction rule
- ``POST /properties/rules``        - regenerate a property's derived rules
- ``POST /transactions/recategorize`` - re-run the engine over rows awaiting review
- ``GET  /healthz``

Error bodies are always ``{"message": ...}``. Pipeline errors carry their own
status via ``LedgerSyncError.http_status``; anything else is a 500 with the
error text.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from ledger_db.client import session_scope
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import Settings
from .errors import InvalidSyncRequestError, LedgerSyncError
from .generalize import build_generalizer
from .hierarchy import normalize_hierarchy
from .logging_setup import get_logger
from .persistence import LedgerStore
from .property_rules import PropertyProfile, generate_rules_for_property
from .rules import learn_user_correction
from .sync import SyncOrchestrator, build_engine, build_orchestrator, recategorize_for_review

_logger = get_logger("ledger_sync.server")

SYNC_WEBHOOK_CODES: frozenset[str] = frozenset(
    {"SYNC_UPDATES_AVAILABLE", "HISTORICAL_UPDATE", "DEFAULT_UPDATE", "INITIAL_UPDATE"}
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncRequest(_CamelModel):
    user_id: str | None = None
    bank_account_id: str | None = None
    full_sync: bool = False
    start_date: str | None = None


class PlaidWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    webhook_type: str | None = None
    webhook_code: str | None = None
    item_id: str | None = None


class CorrectionRequest(_CamelModel):
    user_id: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category_hierarchy: dict[str, Any]
    cost_center: str | None = None


class PropertyRulesRequest(_CamelModel):
    user_id: str = Field(min_length=1)
    property_id: str = Field(min_length=1)
    property: PropertyProfile


class RecategorizeRequest(_CamelModel):
    user_id: str = Field(min_length=1)


def _message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def create_app(
    settings: Settings | None = None,
    *,
    orchestrator_factory: Callable[[Settings], SyncOrchestrator] | None = None,
) -> FastAPI:
    """Build the application.

    The orchestrator (and with it the provider client) is created on first
    use so that the service starts, and non-sync routes work, without
    provider credentials.
    """

    cfg = settings or Settings.from_env()
    factory = orchestrator_factory or build_orchestrator
    app = FastAPI(title="ledger-sync")
    app.state.settings = cfg
    app.state.orchestrator = None

    def orchestrator() -> SyncOrchestrator:
        if app.state.orchestrator is None:
            app.state.orchestrator = factory(cfg)
        return app.state.orchestrator

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = first.get("msg", "invalid request")
        return JSONResponse(
            status_code=400, content={"message": f"{loc}: {detail}" if loc else detail}
        )

    @app.exception_handler(LedgerSyncError)
    async def _pipeline_error(_request: Request, exc: LedgerSyncError) -> JSONResponse:
        return JSONResponse(status_code=exc.http_status, content={"message": _message(exc)})

    @app.exception_handler(Exception)
    async def _unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
        _logger.exception("server:unhandled error=%s", exc.__class__.__name__)
        return JSONResponse(status_code=500, content={"message": _message(exc)})

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"ok": True}

    @app.post("/sync")
    def sync(req: SyncRequest) -> dict[str, Any]:
        if not req.user_id or not req.bank_account_id:
            raise InvalidSyncRequestError("userId and bankAccountId are required")
        try:
            result = orchestrator().sync_account(
                req.user_id,
                req.bank_account_id,
                full_sync=req.full_sync,
                start_date=req.start_date,
            )
        except LedgerSyncError:
            raise
        except Exception as e:  # noqa: BLE001 - store failures surface as 500
            _logger.error(
                "server:sync_failed bank_account_id=%s error=%s",
                req.bank_account_id,
                e.__class__.__name__,
            )
            return JSONResponse(status_code=500, content={"message": _message(e)})
        return {"ok": True, "mode": result.mode, "count": result.count}

    @app.post("/webhooks/plaid")
    def plaid_webhook(hook: PlaidWebhook) -> dict[str, Any]:
        _logger.info(
            "webhook:received type=%s code=%s item_id=%s",
            hook.webhook_type,
            hook.webhook_code,
            hook.item_id,
        )
        if (
            hook.webhook_type != "TRANSACTIONS"
            or hook.webhook_code not in SYNC_WEBHOOK_CODES
            or not hook.item_id
        ):
            return {"received": True, "synced": 0, "failed": 0}
        outcomes = orchestrator().sync_item(hook.item_id)
        return {
            "received": True,
            "synced": sum(1 for o in outcomes if o.error is None),
            "failed": sum(1 for o in outcomes if o.error is not None),
        }

    @app.post("/rules/corrections")
    def learn_correction(req: CorrectionRequest) -> dict[str, Any]:
        generalizer = build_generalizer(cfg.generalizer, model=cfg.generalizer_model)
        with session_scope(database_url=cfg.database_url) as session:
            rule = learn_user_correction(
                session,
                user_id=req.user_id,
                description=req.description,
                hierarchy=normalize_hierarchy(req.category_hierarchy),
                cost_center=req.cost_center,
                generalizer=generalizer,
            )
        return {
            "ok": True,
            "ruleId": rule.rule_id,
            "matchKey": rule.match_key,
            "categoryHierarchy": rule.hierarchy.as_dict(),
        }

    @app.post("/properties/rules")
    def property_rules(req: PropertyRulesRequest) -> dict[str, Any]:
        with session_scope(database_url=cfg.database_url) as session:
            result = generate_rules_for_property(
                session,
                user_id=req.user_id,
                property_id=req.property_id,
                profile=req.property,
            )
        return {"ok": True, "generated": len(result.rules), "deleted": result.deleted}

    @app.post("/transactions/recategorize")
    def recategorize(req: RecategorizeRequest) -> dict[str, Any]:
        if app.state.orchestrator is not None:
            result = app.state.orchestrator.recategorize_for_review(req.user_id)
        else:
            result = recategorize_for_review(
                LedgerStore(database_url=cfg.database_url),
                build_engine(cfg),
                req.user_id,
                batch_size=cfg.max_batch_size,
            )
        return {
            "ok": True,
            "examined": result.examined,
            "updated": result.updated,
            "approved": result.approved,
        }

    return app


__all__ = ["SYNC_WEBHOOK_CODES", "create_app"]
