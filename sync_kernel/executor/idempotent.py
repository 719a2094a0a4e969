"""
Idempotent Executor — applies an ActionPlan to the accounting API.

Behavioral Contract:
- skip and no_match items never touch the network.
- Creates send an Idempotency-Key. A conflict answer (409, or an
  idempotency-collision body) means the task already exists from an earlier
  attempt and is recorded as a soft success.
- Updates always send the full task (the API only offers PUT).
- Only rate-limited calls are retried: up to `max_attempts`, exponential
  backoff unless the server sent Retry-After. Every attempt passes through
  the tenant rate budget again.
- Items under one parent run in plan order, one at a time. Parents run in
  a small thread pool, all sharing the one rate budget.
- The batch cap is checked before any write. An expired token stops all
  further calls and raises with the partial results.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from sync_kernel.models.config import ExecutorConfig
from sync_kernel.models.execution import ErrorKind, ExecutionResult
from sync_kernel.models.plan import ActionPlan, ActionPlanItem, PlanAction
from sync_kernel.money.units import from_minor_units
from sync_kernel.remote.accounting import AccountingClient
from sync_kernel.remote.errors import AuthExpiredError, BatchTooLargeError, RemoteCallError
from sync_kernel.remote.retry import WRITE_RETRYABLE, RetryState, backoff_seconds, should_retry

logger = logging.getLogger(__name__)

# (parent_code, parents_done, parents_total)
ParentProgress = Callable[[str, int, int], None]


def build_task_payload(item: ActionPlanItem, default_currency: str) -> dict:
    """Full task body for POST or PUT. Money goes out as a two-decimal string."""
    desired = item.desired
    remote = item.remote_current
    currency = (remote.currency if remote else None) or desired.currency or default_currency
    return {
        "name": remote.name if remote else desired.name,
        "rate": {"currency": currency, "value": from_minor_units(desired.rate_minor_units)},
        "chargeType": desired.category.value,
        "estimateMinutes": desired.duration_minutes,
    }


def _base_result(item: ActionPlanItem, **fields) -> ExecutionResult:
    remote = item.remote_current
    values = dict(
        entity_key=item.entity_key,
        action=item.action,
        parent_code=item.parent_code,
        parent_name=item.parent_name,
        entity_name=item.desired.name,
        remote_id=item.remote_id,
        idempotency_key=item.idempotency_key,
        old_rate_minor_units=remote.rate_minor_units if remote else None,
        new_rate_minor_units=item.desired.rate_minor_units,
        old_duration_minutes=remote.duration_minutes if remote else None,
        new_duration_minutes=item.desired.duration_minutes,
    )
    values.update(fields)
    return ExecutionResult(**values)


def passive_result(item: ActionPlanItem) -> ExecutionResult:
    """Result for an item that needs no call."""
    if item.action == PlanAction.NO_MATCH:
        return _base_result(
            item,
            success=True,
            error_kind=ErrorKind.PARENT_NOT_FOUND,
            message=item.reason,
        )
    return _base_result(item, success=True, message=item.reason)


class IdempotentExecutor:
    def __init__(
        self,
        client: AccountingClient,
        config: Optional[ExecutorConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_parent_done: Optional[ParentProgress] = None,
    ):
        self.client = client
        self.config = config or ExecutorConfig()
        self._sleep = sleep
        self._on_parent_done = on_parent_done
        self._abort = threading.Event()
        self._progress_lock = threading.Lock()
        self._parents_done = 0

    def check_batch_size(self, plan: ActionPlan) -> None:
        parent_count = len(plan.items_by_parent())
        if parent_count > self.config.max_parents_per_run:
            raise BatchTooLargeError(parent_count, self.config.max_parents_per_run)

    def execute(self, plan: ActionPlan, dry_run: Optional[bool] = None) -> List[ExecutionResult]:
        """Apply the plan. Results come back in plan order."""
        self.check_batch_size(plan)
        dry_run = self.config.dry_run if dry_run is None else dry_run
        groups = plan.items_by_parent()
        self._abort.clear()
        self._parents_done = 0

        outcomes: Dict[int, ExecutionResult] = {}
        for item in plan.items:
            if not item.is_mutation:
                outcomes[id(item)] = passive_result(item)

        logger.info(
            "Executing plan for tenant %s: %d mutations across %d parents%s",
            plan.tenant_id,
            sum(len(g) for g in groups.values()),
            len(groups),
            " (dry run)" if dry_run else "",
        )

        auth_error: Optional[AuthExpiredError] = None
        with ThreadPoolExecutor(max_workers=self.config.parent_concurrency) as pool:
            futures = [
                pool.submit(self._run_parent, items, dry_run, len(groups), outcomes)
                for items in groups.values()
            ]
            for future in futures:
                try:
                    future.result()
                except AuthExpiredError as e:
                    auth_error = auth_error or e

        results = [outcomes[id(item)] for item in plan.items if id(item) in outcomes]
        if auth_error is not None:
            logger.error("Access token rejected; execution stopped after %d results", len(results))
            raise AuthExpiredError(auth_error.message, status=auth_error.status, partial_results=results)
        return results

    def _run_parent(
        self,
        items: List[ActionPlanItem],
        dry_run: bool,
        parent_total: int,
        outcomes: Dict[int, ExecutionResult],
    ) -> None:
        # Each worker writes distinct keys, so the shared dict needs no lock.
        for item in items:
            if self._abort.is_set():
                return
            try:
                outcomes[id(item)] = self._execute_item(item, dry_run)
            except AuthExpiredError as e:
                self._abort.set()
                outcomes[id(item)] = _base_result(
                    item,
                    success=False,
                    http_status=e.status,
                    error_kind=ErrorKind.AUTH_EXPIRED,
                    message=e.message,
                )
                raise

        with self._progress_lock:
            self._parents_done += 1
            completed = self._parents_done
        if self._on_parent_done and items:
            self._on_parent_done(items[0].parent_code, completed, parent_total)

    def _execute_item(self, item: ActionPlanItem, dry_run: bool) -> ExecutionResult:
        payload = build_task_payload(item, self.config.default_currency)
        if dry_run:
            logger.info("[dry run] would %s %s", item.action.value, item.entity_key)
            return _base_result(item, success=True, dry_run=True, message=f"dry run: {item.reason}")

        state = RetryState(max_attempts=self.config.max_attempts)
        while True:
            attempt = state.begin()
            try:
                if item.action == PlanAction.CREATE:
                    response = self.client.create_task(
                        item.parent_remote_id, payload, item.idempotency_key
                    )
                else:
                    response = self.client.replace_task(
                        item.parent_remote_id, item.remote_id, payload
                    )
            except AuthExpiredError:
                raise
            except RemoteCallError as e:
                state.record(e)
                if item.action == PlanAction.CREATE and e.kind == ErrorKind.IDEMPOTENCY_CONFLICT:
                    logger.info("Create of %s already applied (idempotent replay)", item.entity_key)
                    return _base_result(
                        item,
                        success=True,
                        http_status=e.status,
                        error_kind=ErrorKind.IDEMPOTENCY_CONFLICT,
                        retries=state.retries,
                        message=e.message,
                    )
                if should_retry(e.kind, attempt, state.max_attempts, WRITE_RETRYABLE):
                    delay = backoff_seconds(
                        attempt,
                        retry_after=e.retry_after,
                        base=self.config.backoff_base_seconds,
                        exponential=True,
                    )
                    logger.warning(
                        "%s %s rate limited (attempt %d/%d); retrying in %.1fs",
                        item.action.value,
                        item.entity_key,
                        attempt,
                        state.max_attempts,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                logger.warning("%s %s failed: %s", item.action.value, item.entity_key, e)
                return _base_result(
                    item,
                    success=False,
                    http_status=e.status,
                    error_kind=e.kind,
                    retries=state.retries,
                    message=e.message,
                )

            remote_id = item.remote_id
            if item.action == PlanAction.CREATE:
                remote_id = _created_id(response) or remote_id
            logger.info("%s %s -> HTTP %d", item.action.value, item.entity_key, response.status_code)
            return _base_result(
                item,
                success=True,
                http_status=response.status_code,
                retries=state.retries,
                remote_id=remote_id,
            )


def _created_id(response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        value = body.get("taskId") or body.get("id")
        return str(value) if value else None
    return None
