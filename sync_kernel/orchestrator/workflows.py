"""
Workflows: the fetch, plan, execute, report sequences built on the
Progress Orchestrator.

Behavioral Contract:
- Timesheet sync and task standardization mutate the accounting API unless
  `dry_run` is set. Deal/quote validation never writes anything.
- The report step always runs, against whatever results exist.
- Only an expired token, a failure to list parents, an oversized batch or an
  unexpected exception ends a run early; the session then settles as failed
  with its partial results and report.
- Summaries keep real failures apart from "parent not found" outcomes.
"""

import logging
import time
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel

from sync_kernel.executor.idempotent import IdempotentExecutor
from sync_kernel.fetcher.state import RemoteSnapshot, RemoteStateFetcher
from sync_kernel.models.config import (
    DealValidationConfig,
    ExecutorConfig,
    FetchConfig,
    PlannerConfig,
    StandardizationConfig,
)
from sync_kernel.models.entities import ChargeCategory, DesiredEntity
from sync_kernel.models.execution import ErrorKind, ExecutionResult
from sync_kernel.models.plan import ActionPlan, FetchFailure, PlanAction
from sync_kernel.models.progress import ProgressEventType
from sync_kernel.models.session import FailureEntry, Session, SessionSummary
from sync_kernel.models.validation import AccountingQuote, CrmDeal, ValidationSummary
from sync_kernel.orchestrator.progress import ProgressOrchestrator, ProgressSink
from sync_kernel.planner.codes import code_key
from sync_kernel.planner.reconcile import ReconciliationPlanner
from sync_kernel.remote.accounting import AccountingClient
from sync_kernel.remote.crm import CrmClient
from sync_kernel.remote.errors import AuthExpiredError, BatchTooLargeError, RemoteCallError
from sync_kernel.report.csv_report import ReportFile, build_execution_report, build_validation_report
from sync_kernel.store.sessions import SessionStore
from sync_kernel.validation.deals import DealQuoteValidator

logger = logging.getLogger(__name__)

SYNC_STEPS = [
    ("fetch", "Fetch remote state", "List active projects and their tasks"),
    ("plan", "Plan changes", "Compare desired tasks with remote tasks"),
    ("execute", "Apply changes", "Create and update tasks"),
    ("report", "Build report", "Summarize the run"),
]

VALIDATION_STEPS = [
    ("fetch_deals", "Fetch won deals", "Read won deals from the CRM"),
    ("fetch_quotes", "Fetch quotes", "Read quotes from the accounting system"),
    ("validate", "Validate", "Compare deals with quotes"),
    ("report", "Build report", "Summarize the findings"),
]


class WorkflowOutcome(BaseModel):
    session: Session
    plan: Optional[ActionPlan] = None
    results: List[ExecutionResult] = []
    validation: Optional[ValidationSummary] = None
    report: Optional[ReportFile] = None
    error_kind: Optional[str] = None        # "auth_expired", "batch_too_large", "remote_error", "internal_error"


def build_summary(
    results: Iterable[ExecutionResult],
    fetch_failures: Iterable[FetchFailure] = (),
    dry_run: bool = False,
) -> SessionSummary:
    """Aggregate results. Not-found outcomes never count as failures."""
    summary = SessionSummary(dry_run=dry_run)
    for r in results:
        if r.error_kind == ErrorKind.PARENT_NOT_FOUND:
            summary.not_found += 1
            summary.not_found_entities.append(r.entity_key)
        elif r.is_failure:
            summary.failed += 1
            summary.failures.append(
                FailureEntry(
                    entity_key=r.entity_key,
                    parent_code=r.parent_code,
                    entity_name=r.entity_name,
                    error_kind=r.error_kind.value,
                    http_status=r.http_status,
                    message=r.message,
                )
            )
        elif r.error_kind == ErrorKind.IDEMPOTENCY_CONFLICT:
            summary.idempotent_replays += 1
        elif r.action == PlanAction.CREATE:
            summary.created += 1
        elif r.action == PlanAction.UPDATE:
            summary.updated += 1
        elif r.action == PlanAction.SKIP:
            summary.skipped += 1

    for f in fetch_failures:
        summary.fetch_failures += 1
        summary.failures.append(
            FailureEntry(
                entity_key=f"{f.parent_code}/{f.parent_remote_id}/*",
                parent_code=f.parent_code,
                error_kind=f.error_kind,
                http_status=f.http_status,
                message=f"Tasks could not be read; {len(f.entity_names)} tasks not processed: {f.message}",
            )
        )
    return summary


def _fatal_kind(error: Exception) -> str:
    if isinstance(error, AuthExpiredError):
        return "auth_expired"
    if isinstance(error, BatchTooLargeError):
        return "batch_too_large"
    return "remote_error"


def _snapshot_view(snapshot: RemoteSnapshot) -> dict:
    return {
        "parents": len(snapshot.parents),
        "parents_with_tasks": len(snapshot.entities_by_parent),
        "fetch_failures": len(snapshot.failures),
    }


def _results_view(results: List[ExecutionResult]) -> dict:
    return build_summary(results).model_dump(
        include={"created", "updated", "skipped", "not_found", "failed", "idempotent_replays"}
    )


class TimesheetSyncWorkflow:
    """Push timesheet-derived task costs onto matching active projects."""

    workflow = "timesheet_sync"

    def __init__(
        self,
        client: AccountingClient,
        *,
        fetch_config: Optional[FetchConfig] = None,
        planner_config: Optional[PlannerConfig] = None,
        executor_config: Optional[ExecutorConfig] = None,
        sink: Optional[ProgressSink] = None,
        store: Optional[SessionStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.fetch_config = fetch_config or FetchConfig()
        self.planner_config = planner_config or PlannerConfig()
        self.executor_config = executor_config or ExecutorConfig()
        self.sink = sink
        self.store = store
        self._sleep = sleep

    def _parent_codes(self, desired: List[DesiredEntity]) -> Optional[List[str]]:
        return sorted({d.parent_key for d in desired})

    def _desired(self, snapshot: RemoteSnapshot, desired: List[DesiredEntity]) -> List[DesiredEntity]:
        return desired

    def _run(
        self,
        desired: List[DesiredEntity],
        dry_run: Optional[bool],
        run_timestamp: Optional[int],
    ) -> WorkflowOutcome:
        dry_run = self.executor_config.dry_run if dry_run is None else dry_run
        orch = ProgressOrchestrator(
            self.client.tenant_id, self.workflow, SYNC_STEPS, sink=self.sink, store=self.store
        )
        orch.start()
        fetcher = RemoteStateFetcher(self.client, self.fetch_config, sleep=self._sleep)
        planner = ReconciliationPlanner(self.planner_config)
        executor = IdempotentExecutor(
            self.client,
            self.executor_config,
            sleep=self._sleep,
            on_parent_done=lambda code, done, total: orch.emit(
                ProgressEventType.PIPELINE_PROGRESS,
                step="execute",
                message=f"Finished {code}",
                current=done,
                total=total,
            ),
        )

        plan: Optional[ActionPlan] = None
        results: List[ExecutionResult] = []
        error: Optional[str] = None
        error_kind: Optional[str] = None
        try:
            snapshot = orch.run_step(
                "fetch",
                lambda: fetcher.fetch_snapshot(self._parent_codes(desired)),
                _snapshot_view,
                fatal=True,
            )
            wanted = self._desired(snapshot, desired)
            plan = orch.run_step(
                "plan",
                lambda: planner.plan(self.client.tenant_id, wanted, snapshot, run_timestamp),
                lambda p: p.statistics.model_dump(),
                fatal=True,
            )
            if not any(item.is_mutation for item in plan.items):
                results = executor.execute(plan, dry_run)
                orch.skip_step("execute", "Nothing to change")
            else:
                results = orch.run_step(
                    "execute", lambda: executor.execute(plan, dry_run), _results_view, fatal=True
                )
        except (RemoteCallError, BatchTooLargeError) as e:
            if isinstance(e, AuthExpiredError):
                results = e.partial_results
            error = str(e)
            error_kind = _fatal_kind(e)
            logger.error("%s for tenant %s stopped: %s", self.workflow, self.client.tenant_id, e)
        except Exception as e:
            error = f"Unexpected error: {e}"
            error_kind = "internal_error"
            logger.exception("%s for tenant %s crashed", self.workflow, self.client.tenant_id)

        summary = build_summary(results, plan.fetch_failures if plan else [], dry_run)
        orch.session.summary = summary
        report = orch.run_step(
            "report",
            lambda: build_execution_report(orch.session, results, plan.fetch_failures if plan else []),
            lambda r: {"filename": r.filename},
        )
        attachments = {"report": report.model_dump()} if report else None
        session = orch.finalize(summary, error=error, attachments=attachments)
        return WorkflowOutcome(
            session=session,
            plan=plan,
            results=results,
            report=report,
            error_kind=error_kind,
        )

    def run(
        self,
        desired: List[DesiredEntity],
        dry_run: Optional[bool] = None,
        run_timestamp: Optional[int] = None,
    ) -> WorkflowOutcome:
        return self._run(desired, dry_run, run_timestamp)


class TaskStandardizationWorkflow(TimesheetSyncWorkflow):
    """Make sure every active project carries the required task set. Never rewrites values."""

    workflow = "task_standardization"

    def __init__(
        self,
        client: AccountingClient,
        *,
        template: Optional[StandardizationConfig] = None,
        **kwargs,
    ):
        kwargs["planner_config"] = PlannerConfig(create_only=True)
        super().__init__(client, **kwargs)
        self.template = template or StandardizationConfig()

    def _parent_codes(self, desired: List[DesiredEntity]) -> Optional[List[str]]:
        return None

    def _desired(self, snapshot: RemoteSnapshot, desired: List[DesiredEntity]) -> List[DesiredEntity]:
        seen = set()
        wanted: List[DesiredEntity] = []
        category = ChargeCategory(self.template.category.upper())
        for parent in snapshot.parents:
            key = code_key(parent.code)
            if key in seen:
                continue
            seen.add(key)
            for name in self.template.required_tasks:
                wanted.append(
                    DesiredEntity(
                        parent_key=parent.code,
                        name=name,
                        rate_minor_units=self.template.rate_minor_units,
                        duration_minutes=self.template.duration_minutes,
                        category=category,
                        currency=self.template.currency,
                    )
                )
        return wanted

    def run(
        self,
        desired: Optional[List[DesiredEntity]] = None,
        dry_run: Optional[bool] = None,
        run_timestamp: Optional[int] = None,
    ) -> WorkflowOutcome:
        return self._run([], dry_run, run_timestamp)


class DealQuoteValidationWorkflow:
    """Check won CRM deals against accounting quotes. Read-only."""

    workflow = "deal_quote_validation"

    def __init__(
        self,
        client: AccountingClient,
        crm: CrmClient,
        *,
        config: Optional[DealValidationConfig] = None,
        fetch_config: Optional[FetchConfig] = None,
        sink: Optional[ProgressSink] = None,
        store: Optional[SessionStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.crm = crm
        self.config = config or DealValidationConfig()
        self.fetcher = RemoteStateFetcher(client, fetch_config, crm=crm, sleep=sleep)
        self.validator = DealQuoteValidator(self.config)
        self.sink = sink
        self.store = store

    def run(self) -> WorkflowOutcome:
        tenant_id = self.client.tenant_id
        orch = ProgressOrchestrator(tenant_id, self.workflow, VALIDATION_STEPS, sink=self.sink, store=self.store)
        orch.start()

        validation: Optional[ValidationSummary] = None
        error: Optional[str] = None
        error_kind: Optional[str] = None
        try:
            deals: List[CrmDeal] = orch.run_step(
                "fetch_deals",
                lambda: self.fetcher.fetch_won_deals(self.config),
                lambda d: {"deals": len(d)},
                fatal=True,
            )
            quotes: List[AccountingQuote] = orch.run_step(
                "fetch_quotes",
                self.fetcher.fetch_quotes,
                lambda q: {"quotes": len(q)},
                fatal=True,
            )
            validation = orch.run_step(
                "validate",
                lambda: self.validator.validate(deals, quotes),
                lambda v: {"errors": v.errors, "warnings": v.warnings, "issues_by_code": v.issues_by_code},
            )
        except RemoteCallError as e:
            error = str(e)
            error_kind = _fatal_kind(e)
            logger.error("Deal validation for tenant %s stopped: %s", tenant_id, e)
        except Exception as e:
            error = f"Unexpected error: {e}"
            error_kind = "internal_error"
            logger.exception("Deal validation for tenant %s crashed", tenant_id)

        if validation is not None:
            total = len(validation.results)
            for index, result in enumerate(validation.results, start=1):
                orch.emit(
                    ProgressEventType.VALIDATION_PROGRESS,
                    step="validate",
                    message=result.deal.title,
                    current=index,
                    total=total,
                    data={"deal_id": result.deal.deal_id, "issues": [i.code for i in result.issues]},
                )
            report = orch.run_step(
                "report",
                lambda: build_validation_report(validation, tenant_id),
                lambda r: {"filename": r.filename},
            )
        else:
            orch.skip_step("report", "Nothing to report")
            report = None

        summary = SessionSummary()
        if validation is not None:
            summary.notes = [
                f"{validation.total_deals} deals checked",
                f"{validation.errors} errors, {validation.warnings} warnings",
            ]
        attachments = {"report": report.model_dump()} if report else None
        session = orch.finalize(summary, error=error, attachments=attachments)
        return WorkflowOutcome(
            session=session,
            validation=validation,
            report=report,
            error_kind=error_kind,
        )
