"""
Delimited text reports for finished sessions.

Column layout and `#` metadata lines are consumed by downstream
spreadsheets; keep them stable. Every field is quoted.
"""

import csv
import io
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from sync_kernel.models.execution import ErrorKind, ExecutionResult
from sync_kernel.models.plan import FetchFailure, PlanAction
from sync_kernel.models.session import Session
from sync_kernel.models.validation import ValidationSummary
from sync_kernel.money.units import format_money

EXECUTION_COLUMNS = [
    "Section", "Project Code", "Project Name", "Task Name", "Action",
    "Status", "Details", "Error", "Succeeded", "Failed", "Skipped",
]
VALIDATION_COLUMNS = [
    "Deal ID", "Deal Title", "Quote Number", "Deal Value", "Quote Total",
    "Severity", "Issue", "Message",
]


class ReportFile(BaseModel):
    filename: str
    content: str


class _Counters:
    def __init__(self):
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0

    def tail(self) -> List[str]:
        return [str(self.succeeded), str(self.failed), str(self.skipped)]


def _details(result: ExecutionResult) -> str:
    if result.action == PlanAction.UPDATE and result.old_rate_minor_units is not None:
        return (
            f"{result.old_duration_minutes}min/{format_money(result.old_rate_minor_units)} -> "
            f"{result.new_duration_minutes}min/{format_money(result.new_rate_minor_units)}"
        )
    if result.action == PlanAction.CREATE and result.new_rate_minor_units is not None:
        return f"{result.new_duration_minutes}min/{format_money(result.new_rate_minor_units)}"
    return result.message or ""


def _writer(buffer: io.StringIO):
    return csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")


def build_execution_report(
    session: Session,
    results: Sequence[ExecutionResult],
    fetch_failures: Sequence[FetchFailure] = (),
    generated_at: Optional[datetime] = None,
) -> ReportFile:
    generated_at = generated_at or datetime.now(timezone.utc)
    summary = session.summary
    succeeded = [r for r in results if r.success and r.action in (PlanAction.CREATE, PlanAction.UPDATE)]
    failures = [r for r in results if r.is_failure]
    skipped = [r for r in results if r.action == PlanAction.SKIP and r.success]
    not_found = [r for r in results if r.error_kind == ErrorKind.PARENT_NOT_FOUND]

    buffer = io.StringIO()
    writer = _writer(buffer)
    writer.writerow(EXECUTION_COLUMNS)

    meta = [
        f"# Report Generated: {generated_at.isoformat()}",
        f"# Session: {session.id}",
        f"# Tenant: {session.tenant_id}",
        f"# Workflow: {session.workflow}",
    ]
    if summary is not None:
        meta += [
            f"# Tasks Created: {summary.created}",
            f"# Tasks Updated: {summary.updated}",
            f"# Tasks Unchanged: {summary.skipped}",
            f"# Actual Task Failures: {summary.failed}",
            f"# Projects Not Found (Likely Closed): {summary.not_found}",
            f"# Idempotent Replays: {summary.idempotent_replays}",
        ]
        if summary.dry_run:
            meta.append("# DRY RUN: no changes were sent")
    buffer.write("\n".join(meta) + "\n\n")
    if failures or fetch_failures:
        buffer.write(
            f"# ALERT: {len(failures) + len(fetch_failures)} failures require attention\n\n"
        )

    counters = _Counters()

    def row(section: str, values: List[str]) -> None:
        writer.writerow([section] + values + counters.tail())

    if succeeded:
        buffer.write("# SUCCESSFUL OPERATIONS\n")
        for r in succeeded:
            counters.succeeded += 1
            status = "Already Applied" if r.error_kind == ErrorKind.IDEMPOTENCY_CONFLICT else "Success"
            if r.dry_run:
                status = "Dry Run"
            row("Success", [r.parent_code or "", r.parent_name or "", r.entity_name or "",
                            r.action.value, status, _details(r), ""])
        buffer.write("\n")

    if failures or fetch_failures:
        buffer.write("# FAILURES REQUIRING ATTENTION\n")
        for r in failures:
            counters.failed += 1
            row("Failure", [r.parent_code or "", r.parent_name or "", r.entity_name or "",
                            r.action.value, "Failed", _details(r),
                            f"{r.error_kind.value}: {r.message or ''}".strip()])
        for f in fetch_failures:
            counters.failed += 1
            row("Failure", [f.parent_code, f.parent_name, f"{len(f.entity_names)} tasks",
                            "fetch", "Failed", "Tasks could not be read",
                            f"{f.error_kind}: {f.message}"])
        buffer.write("\n")

    if skipped:
        buffer.write("# UNCHANGED\n")
        for r in skipped:
            counters.skipped += 1
            row("Skipped", [r.parent_code or "", r.parent_name or "", r.entity_name or "",
                            r.action.value, "Skipped", r.message or "", ""])
        buffer.write("\n")

    if not_found:
        buffer.write("# PROJECTS NOT FOUND (LIKELY CLOSED/COMPLETED)\n")
        by_code: Dict[str, int] = {}
        for r in not_found:
            by_code[r.parent_code or ""] = by_code.get(r.parent_code or "", 0) + 1
        for code, count in by_code.items():
            counters.skipped += count
            row("Info", [code, "Not Found", f"{count} tasks", "skipped", "Info",
                         "Project not in active status", "Normal - no action required"])
        buffer.write("\n")

    attempted = counters.succeeded + counters.failed
    rate = 100.0 if counters.failed == 0 else counters.succeeded / attempted * 100
    buffer.write(
        "# SUMMARY\n"
        f"# Total Operations: {len(results)}\n"
        f"# Successful: {counters.succeeded}\n"
        f"# Actual Failures: {counters.failed}\n"
        f"# Projects Not Found: {len(not_found)}\n"
        f"# Success Rate (excluding not found): {rate:.1f}%\n"
    )

    day = session.started_at.strftime("%Y-%m-%d")
    return ReportFile(filename=f"sync-execution-report-{day}.csv", content=buffer.getvalue())


def build_validation_report(
    validation: ValidationSummary,
    tenant_id: str = "",
    generated_at: Optional[datetime] = None,
) -> ReportFile:
    generated_at = generated_at or datetime.now(timezone.utc)
    buffer = io.StringIO()
    writer = _writer(buffer)
    writer.writerow(VALIDATION_COLUMNS)
    buffer.write(
        f"# Report Generated: {generated_at.isoformat()}\n"
        f"# Tenant: {tenant_id}\n"
        f"# Deals Checked: {validation.total_deals}\n"
        f"# Quotes Matched: {validation.quotes_matched}\n"
        f"# Errors: {validation.errors}\n"
        f"# Warnings: {validation.warnings}\n\n"
    )
    for result in validation.results:
        deal = result.deal
        quote_total = (
            format_money(result.quote.total_minor_units, result.quote.currency or "")
            if result.quote else ""
        )
        for issue in result.issues:
            writer.writerow([
                deal.deal_id,
                deal.title,
                deal.quote_number or (result.quote.quote_number if result.quote else ""),
                format_money(deal.value_minor_units, deal.currency),
                quote_total,
                issue.severity.value,
                issue.code,
                issue.message,
            ])

    day = generated_at.strftime("%Y-%m-%d")
    return ReportFile(filename=f"deal-validation-report-{day}.csv", content=buffer.getvalue())
