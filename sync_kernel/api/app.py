"""
Sync Kernel API — FastAPI endpoints.

A thin surface over the workflows:
- Timesheet sync (plain and streamed as server-sent events)
- Task standardization
- Deal/quote validation
- Rate budget usage
- Session history

Bearer tokens are taken as given (request header or settings); acquiring
and refreshing them happens elsewhere.
"""

import json
import logging
import queue
import threading
import time
from typing import Callable, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from sync_kernel.config.settings import Settings, configure_logging
from sync_kernel.ingest.timesheet import IngestError, desired_from_consolidated_payload
from sync_kernel.models.progress import ProgressEvent, ProgressEventType
from sync_kernel.money.units import UnitTag
from sync_kernel.orchestrator.workflows import (
    DealQuoteValidationWorkflow,
    TaskStandardizationWorkflow,
    TimesheetSyncWorkflow,
    WorkflowOutcome,
)
from sync_kernel.rate_budget.budget import TenantRateBudget
from sync_kernel.remote.accounting import AccountingClient
from sync_kernel.remote.crm import CrmClient
from sync_kernel.store.sessions import SessionStore

logger = logging.getLogger(__name__)

# (tenant_id, bearer_token) -> client
AccountingFactory = Callable[[str, str], AccountingClient]
CrmFactory = Callable[[], CrmClient]

_STREAM_END = object()


# --- Request Models ---

class TimesheetSyncRequest(BaseModel):
    consolidated_payload: Dict[str, List[dict]]
    rate_unit: UnitTag = UnitTag.MINOR
    dry_run: bool = False
    run_timestamp: Optional[int] = None


class StandardizeRequest(BaseModel):
    dry_run: bool = False
    required_tasks: Optional[List[str]] = None


def _outcome_response(outcome: WorkflowOutcome) -> dict:
    body = outcome.model_dump(mode="json", exclude={"plan"})
    if outcome.plan is not None:
        body["plan_statistics"] = outcome.plan.statistics.model_dump()
    return body


def _raise_for_fatal(outcome: WorkflowOutcome) -> None:
    session = outcome.session
    if outcome.error_kind == "batch_too_large":
        raise HTTPException(400, {"message": session.error, "session_id": session.id})
    if outcome.error_kind == "auth_expired":
        raise HTTPException(401, {"message": session.error, "session_id": session.id})
    if outcome.error_kind == "internal_error":
        raise HTTPException(500, {"message": session.error, "session_id": session.id})


# --- Application Factory ---

def create_app(
    settings: Optional[Settings] = None,
    rate_budget: Optional[TenantRateBudget] = None,
    session_store: Optional[SessionStore] = None,
    accounting_factory: Optional[AccountingFactory] = None,
    crm_factory: Optional[CrmFactory] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    cfg = settings or Settings()
    configure_logging(cfg.log_level)

    app = FastAPI(
        title="Sync Kernel API",
        description="Reconciles timesheet and CRM data against the accounting API",
        version="0.1.0",
    )

    rb = rate_budget or TenantRateBudget(cfg.rate_budget_config())
    store = session_store or SessionStore(cfg.session_db_path)

    def default_accounting_factory(tenant_id: str, token: str) -> AccountingClient:
        return AccountingClient(
            tenant_id=tenant_id,
            token_provider=lambda: token,
            rate_budget=rb,
            base_url=cfg.accounting_base_url,
            timeout_seconds=cfg.http_timeout_seconds,
        )

    def default_crm_factory() -> CrmClient:
        if cfg.crm_api_key is None:
            raise HTTPException(503, "CRM API key is not configured")
        return CrmClient(
            api_key=cfg.crm_api_key.get_secret_value(),
            base_url=cfg.crm_base_url,
            timeout_seconds=cfg.http_timeout_seconds,
            page_size=cfg.page_size,
            max_pages=cfg.max_pages,
        )

    make_accounting = accounting_factory or default_accounting_factory
    make_crm = crm_factory or default_crm_factory

    app.state.settings = cfg
    app.state.rate_budget = rb
    app.state.session_store = store

    def bearer_token(authorization: Optional[str]) -> str:
        if authorization and authorization.lower().startswith("bearer "):
            return authorization[7:].strip()
        if cfg.access_token is not None:
            return cfg.access_token.get_secret_value()
        raise HTTPException(401, "Missing bearer token")

    def timesheet_workflow(tenant_id: str, authorization: Optional[str], sink=None):
        client = make_accounting(tenant_id, bearer_token(authorization))
        return client, TimesheetSyncWorkflow(
            client,
            fetch_config=cfg.fetch_config(),
            executor_config=cfg.executor_config(),
            sink=sink,
            store=store,
            sleep=sleep,
        )

    def ingest(req: TimesheetSyncRequest):
        try:
            return desired_from_consolidated_payload(req.consolidated_payload, req.rate_unit)
        except IngestError as e:
            raise HTTPException(422, str(e))

    # === TIMESHEET SYNC ===

    @app.post("/tenants/{tenant_id}/sync/timesheet")
    def sync_timesheet(
        tenant_id: str,
        req: TimesheetSyncRequest,
        authorization: Optional[str] = Header(default=None),
    ):
        """Apply a consolidated timesheet payload to the tenant's active projects."""
        desired = ingest(req)
        client, workflow = timesheet_workflow(tenant_id, authorization)
        try:
            outcome = workflow.run(desired, dry_run=req.dry_run, run_timestamp=req.run_timestamp)
        finally:
            client.close()
        _raise_for_fatal(outcome)
        return _outcome_response(outcome)

    @app.post("/tenants/{tenant_id}/sync/timesheet/stream")
    def sync_timesheet_stream(
        tenant_id: str,
        req: TimesheetSyncRequest,
        authorization: Optional[str] = Header(default=None),
    ):
        """Same as the plain sync, with progress delivered as server-sent events."""
        desired = ingest(req)
        events: "queue.Queue" = queue.Queue()
        client, workflow = timesheet_workflow(tenant_id, authorization, sink=events.put)

        def work() -> None:
            try:
                workflow.run(desired, dry_run=req.dry_run, run_timestamp=req.run_timestamp)
            except Exception as e:
                logger.exception("Streamed sync for tenant %s crashed", tenant_id)
                events.put(ProgressEvent(type=ProgressEventType.ERROR, session_id="", message=str(e)))
            finally:
                client.close()
                events.put(_STREAM_END)

        threading.Thread(target=work, name=f"sync-{tenant_id}", daemon=True).start()

        def stream():
            while True:
                event = events.get()
                if event is _STREAM_END:
                    return
                yield f"data: {json.dumps(event.model_dump(mode='json'))}\n\n"

        return StreamingResponse(stream(), media_type="text/event-stream")

    # === STANDARDIZATION ===

    @app.post("/tenants/{tenant_id}/sync/standardize")
    def standardize_tasks(
        tenant_id: str,
        req: StandardizeRequest,
        authorization: Optional[str] = Header(default=None),
    ):
        """Ensure every active project carries the required task set."""
        template = cfg.standardization_config()
        if req.required_tasks:
            template.required_tasks = req.required_tasks
        client = make_accounting(tenant_id, bearer_token(authorization))
        workflow = TaskStandardizationWorkflow(
            client,
            template=template,
            fetch_config=cfg.fetch_config(),
            executor_config=cfg.executor_config(),
            store=store,
            sleep=sleep,
        )
        try:
            outcome = workflow.run(dry_run=req.dry_run)
        finally:
            client.close()
        _raise_for_fatal(outcome)
        return _outcome_response(outcome)

    # === DEAL / QUOTE VALIDATION ===

    @app.post("/tenants/{tenant_id}/validate/deals")
    def validate_deals(tenant_id: str, authorization: Optional[str] = Header(default=None)):
        """Compare won CRM deals with accounting quotes. Read-only."""
        client = make_accounting(tenant_id, bearer_token(authorization))
        crm: Optional[CrmClient] = None
        try:
            crm = make_crm()
            workflow = DealQuoteValidationWorkflow(
                client,
                crm,
                config=cfg.deal_validation_config(),
                fetch_config=cfg.fetch_config(),
                store=store,
                sleep=sleep,
            )
            outcome = workflow.run()
        finally:
            client.close()
            if crm is not None:
                crm.close()
        _raise_for_fatal(outcome)
        return _outcome_response(outcome)

    # === RATE BUDGET ===

    @app.get("/tenants/{tenant_id}/rate-budget")
    def get_rate_budget(tenant_id: str):
        """Calls used and remaining in the current minute and day windows."""
        return rb.usage(tenant_id)

    # === SESSIONS ===

    @app.get("/tenants/{tenant_id}/sessions")
    def list_sessions(tenant_id: str, limit: int = 50):
        """Recent sessions for a tenant, newest first."""
        return [s.model_dump(mode="json") for s in store.query_by_tenant(tenant_id, limit=limit)]

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str):
        session = store.get(session_id)
        if not session:
            raise HTTPException(404, "Session not found")
        return session.model_dump(mode="json")

    @app.get("/health")
    def health():
        return {"status": "ok", "sessions": store.count()}

    return app
