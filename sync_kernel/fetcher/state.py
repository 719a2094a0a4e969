"""
Remote State Fetcher — reads the current remote state for one run.

Behavioral Contract:
- Read-only. Collections are paged until a short page or the page ceiling.
- Each parent's children are fetched exactly once per snapshot, so the
  planner always works from one consistent view per parent.
- 404 on a parent's task list means the parent has no tasks.
- Rate-limited and transient failures are retried (linear backoff, or the
  server's Retry-After). A parent whose children still cannot be read is
  recorded as a failure; its siblings are unaffected.
- Failing to list the parents themselves, or an expired token, raises.
- Heterogeneous field names are normalized here, once, into typed records.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

from sync_kernel.models.config import DealValidationConfig, FetchConfig
from sync_kernel.models.entities import ChargeCategory, RemoteEntity, RemoteParent
from sync_kernel.models.execution import ErrorKind
from sync_kernel.models.plan import FetchFailure
from sync_kernel.models.validation import AccountingQuote, CrmDeal
from sync_kernel.money.units import UnitTag, to_minor_units
from sync_kernel.planner.codes import code_key, extract_parent_code
from sync_kernel.remote.accounting import AccountingClient
from sync_kernel.remote.crm import CrmClient
from sync_kernel.remote.errors import AuthExpiredError, RemoteCallError
from sync_kernel.remote.retry import READ_RETRYABLE, RetryState, backoff_seconds, should_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RemoteSnapshot(BaseModel):
    """Everything fetched for one run."""

    parents: List[RemoteParent] = []
    entities_by_parent: Dict[str, List[RemoteEntity]] = {}
    failures: List[FetchFailure] = []

    def failed_parent_ids(self) -> set:
        return {f.parent_remote_id for f in self.failures}


# --- Normalization ---


def _first(raw: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return default


def _rate_minor_units(raw: dict) -> Tuple[int, Optional[str]]:
    rate = raw.get("rate")
    if isinstance(rate, dict):
        return to_minor_units(rate.get("value", 0), UnitTag.MAJOR), rate.get("currency")
    value = _first(raw, "rateValue", "rate_value")
    if value is None and rate is not None:
        value = rate
    if value is not None:
        return to_minor_units(value, UnitTag.MAJOR), _first(raw, "currency", "rateCurrency")
    minor = _first(raw, "rateMinorUnits", "rate_minor_units", default=0)
    return to_minor_units(minor, UnitTag.MINOR), _first(raw, "currency", "rateCurrency")


def normalize_parent(raw: dict) -> RemoteParent:
    name = str(_first(raw, "name", "projectName", "project_name", default=""))
    code = _first(raw, "projectCode", "project_code") or extract_parent_code(name)
    return RemoteParent(
        remote_id=str(_first(raw, "projectId", "project_id", "id")),
        name=name,
        code=str(code),
        status=str(_first(raw, "status", default="INPROGRESS")),
    )


def normalize_entity(raw: dict, parent_remote_id: str) -> RemoteEntity:
    rate_minor, currency = _rate_minor_units(raw)
    category = str(_first(raw, "chargeType", "charge_type", "category", default="TIME")).upper()
    return RemoteEntity(
        remote_id=str(_first(raw, "taskId", "task_id", "id")),
        parent_remote_id=str(_first(raw, "projectId", "project_id", default=parent_remote_id)),
        name=str(_first(raw, "name", default="")),
        rate_minor_units=rate_minor,
        duration_minutes=int(_first(raw, "estimateMinutes", "estimate_minutes", "duration_minutes", default=0)),
        category=ChargeCategory(category),
        currency=currency,
        status=_first(raw, "status"),
    )


def normalize_quote(raw: dict) -> AccountingQuote:
    return AccountingQuote(
        quote_id=str(_first(raw, "QuoteID", "quoteId", "quote_id")),
        quote_number=str(_first(raw, "QuoteNumber", "quoteNumber", "quote_number", default="")),
        status=str(_first(raw, "Status", "status", default="")),
        total_minor_units=to_minor_units(_first(raw, "Total", "total", default=0), UnitTag.MAJOR),
        currency=_first(raw, "CurrencyCode", "currencyCode", "currency"),
        reference=_first(raw, "Reference", "reference"),
        title=_first(raw, "Title", "title"),
    )


def _custom_field(raw: dict, field: str) -> Optional[str]:
    value = raw.get(field)
    if value is None:
        value = (raw.get("custom_fields") or {}).get(field)
    if isinstance(value, dict):
        value = value.get("value")
    if value in (None, ""):
        return None
    return str(value).strip()


def normalize_deal(raw: dict, config: DealValidationConfig) -> CrmDeal:
    return CrmDeal(
        deal_id=str(raw.get("id")),
        title=str(raw.get("title") or ""),
        value_minor_units=to_minor_units(raw.get("value") or 0, UnitTag.MAJOR),
        currency=str(raw.get("currency") or "SGD"),
        pipeline_id=int(raw.get("pipeline_id") or 0),
        won_time=raw.get("won_time"),
        quote_id=_custom_field(raw, config.quote_id_field),
        quote_number=_custom_field(raw, config.quote_number_field),
    )


# --- Fetcher ---


class RemoteStateFetcher:
    """Paginated, retrying reader of the accounting (and optionally CRM) state."""

    def __init__(
        self,
        client: AccountingClient,
        config: Optional[FetchConfig] = None,
        crm: Optional[CrmClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.config = config or FetchConfig()
        self.crm = crm
        self._sleep = sleep

    def _with_retry(self, call: Callable[[], T], description: str) -> T:
        state = RetryState(max_attempts=self.config.max_attempts)
        while True:
            attempt = state.begin()
            try:
                return call()
            except AuthExpiredError:
                raise
            except RemoteCallError as e:
                state.record(e)
                if not should_retry(e.kind, attempt, state.max_attempts, READ_RETRYABLE):
                    raise
                delay = backoff_seconds(
                    attempt,
                    retry_after=e.retry_after,
                    base=self.config.backoff_base_seconds,
                )
                logger.warning(
                    "%s failed on attempt %d/%d (%s); retrying in %.1fs",
                    description,
                    attempt,
                    state.max_attempts,
                    e,
                    delay,
                )
                self._sleep(delay)

    def _paged(self, fetch_page: Callable[[int], List[dict]], description: str) -> List[dict]:
        rows: List[dict] = []
        for page in range(1, self.config.max_pages + 1):
            items = self._with_retry(lambda: fetch_page(page), f"{description} page {page}")
            rows.extend(items)
            if len(items) < self.config.page_size:
                return rows
        logger.warning(
            "%s: stopped at the %d page ceiling; results may be incomplete",
            description,
            self.config.max_pages,
        )
        return rows

    def fetch_parents(self, status: Optional[str] = None) -> List[RemoteParent]:
        """All parents in `status`. Any failure here is structural and raises."""
        states = status or self.config.parent_status
        rows = self._paged(
            lambda page: self.client.list_projects_page(
                page=page, page_size=self.config.page_size, states=states
            ).get("items") or [],
            "List projects",
        )
        parents = [normalize_parent(r) for r in rows]
        logger.info("Fetched %d %s parents", len(parents), states)
        return parents

    def fetch_entities(self, parent: RemoteParent) -> List[RemoteEntity]:
        """
        All tasks under one parent. A 404 on the first page means the parent
        has no task collection; on any later page it is a failure.
        """

        def page_rows(page: int) -> List[dict]:
            try:
                payload = self.client.list_tasks_page(
                    parent.remote_id, page=page, page_size=self.config.page_size
                )
            except RemoteCallError as e:
                if page == 1 and e.status == 404 and not isinstance(e, AuthExpiredError):
                    logger.debug("No task collection for parent %s (404)", parent.remote_id)
                    return []
                raise
            return payload.get("items") or []

        rows = self._paged(page_rows, f"List tasks for {parent.code}")
        return [normalize_entity(r, parent.remote_id) for r in rows]

    def fetch_snapshot(self, parent_codes: Optional[Iterable[str]] = None) -> RemoteSnapshot:
        """
        Parents plus each parent's children.

        With `parent_codes`, only parents whose code matches one of them
        (case-insensitively) have their children fetched.
        """
        parents = self.fetch_parents()
        if parent_codes is not None:
            wanted = {code_key(c) for c in parent_codes}
            parents = [p for p in parents if code_key(p.code) in wanted]

        abort = threading.Event()

        def fetch_one(parent: RemoteParent):
            if abort.is_set():
                return None
            try:
                return self.fetch_entities(parent)
            except AuthExpiredError:
                abort.set()
                raise
            except RemoteCallError as e:
                return FetchFailure(
                    parent_remote_id=parent.remote_id,
                    parent_code=parent.code,
                    parent_name=parent.name,
                    error_kind=e.kind.value,
                    message=e.message,
                    http_status=e.status,
                )
            except ValueError as e:
                return FetchFailure(
                    parent_remote_id=parent.remote_id,
                    parent_code=parent.code,
                    parent_name=parent.name,
                    error_kind=ErrorKind.UNKNOWN.value,
                    message=f"Unreadable task data: {e}",
                )

        snapshot = RemoteSnapshot(parents=parents)
        with ThreadPoolExecutor(max_workers=self.config.parent_concurrency) as pool:
            futures = [(p, pool.submit(fetch_one, p)) for p in parents]
            for parent, future in futures:
                outcome = future.result()
                if isinstance(outcome, FetchFailure):
                    logger.warning(
                        "Could not fetch tasks for %s (%s): %s",
                        parent.code,
                        parent.remote_id,
                        outcome.message,
                    )
                    snapshot.failures.append(outcome)
                elif outcome is not None:
                    snapshot.entities_by_parent[parent.remote_id] = outcome

        logger.info(
            "Snapshot: %d parents, %d with tasks, %d failed",
            len(snapshot.parents),
            len(snapshot.entities_by_parent),
            len(snapshot.failures),
        )
        return snapshot

    def fetch_quotes(self, status: Optional[str] = None) -> List[AccountingQuote]:
        rows = self._paged(
            lambda page: self.client.list_quotes_page(page=page, status=status).get("Quotes") or [],
            "List quotes",
        )
        return [normalize_quote(r) for r in rows]

    def fetch_won_deals(self, config: Optional[DealValidationConfig] = None) -> List[CrmDeal]:
        if self.crm is None:
            raise ValueError("No CRM client configured")
        config = config or DealValidationConfig()
        pipeline_id = config.pipeline_id or None
        rows = self._with_retry(lambda: self.crm.fetch_won_deals(pipeline_id), "Fetch won deals")
        return [normalize_deal(r, config) for r in rows]
