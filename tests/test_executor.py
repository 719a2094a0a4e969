"""Tests for the Idempotent Executor against the in-memory accounting API."""

import json
import threading
import time

import httpx
import pytest

from sync_kernel.executor.idempotent import IdempotentExecutor, build_task_payload
from sync_kernel.fetcher.state import RemoteStateFetcher
from sync_kernel.models.config import ExecutorConfig, RateBudgetConfig
from sync_kernel.models.entities import DesiredEntity
from sync_kernel.models.execution import ErrorKind
from sync_kernel.models.plan import PlanAction
from sync_kernel.planner.reconcile import ReconciliationPlanner
from sync_kernel.rate_budget.budget import TenantRateBudget
from sync_kernel.remote.accounting import AccountingClient
from sync_kernel.remote.errors import AuthExpiredError, BatchTooLargeError

RUN_TS = 1_700_000_000_000


def _desired(parent_key="NY25001", name="Manhour", rate=5000, minutes=120) -> DesiredEntity:
    return DesiredEntity(parent_key=parent_key, name=name, rate_minor_units=rate, duration_minutes=minutes)


def _make_plan(client, clock, desired):
    snapshot = RemoteStateFetcher(client, sleep=clock.sleep).fetch_snapshot()
    return ReconciliationPlanner().plan("tenant-1", desired, snapshot, run_timestamp=RUN_TS)


def _make_executor(client, clock, **overrides) -> IdempotentExecutor:
    return IdempotentExecutor(client, ExecutorConfig(**overrides), sleep=clock.sleep)


class TestCreate:
    def test_missing_task_is_created(self, api, client, clock):
        api.add_project("p1", "NY25001 - Vessel")
        plan = _make_plan(client, clock, [_desired()])

        results = _make_executor(client, clock).execute(plan)
        assert len(results) == 1
        result = results[0]
        assert result.action == PlanAction.CREATE
        assert result.success
        assert result.http_status == 201
        assert result.remote_id == api.tasks["p1"][0]["taskId"]
        assert api.tasks["p1"][0]["rate"] == {"currency": "USD", "value": "50.00"}
        assert api.requests[-1].headers["Idempotency-Key"] == plan.items[0].idempotency_key

    def test_reexecuting_the_same_plan_never_duplicates(self, api, client, clock):
        api.add_project("p1", "NY25001")
        plan = _make_plan(client, clock, [_desired()])
        executor = _make_executor(client, clock)

        executor.execute(plan)
        replay = executor.execute(plan)

        assert len(api.tasks["p1"]) == 1
        assert replay[0].success
        assert replay[0].error_kind == ErrorKind.IDEMPOTENCY_CONFLICT
        assert not replay[0].is_failure

    def test_collision_body_on_400_is_a_soft_success(self, api, client, clock):
        api.add_project("p1", "NY25001")
        api.script(
            "POST", "p1/Tasks",
            httpx.Response(400, json={"Message": "This Idempotency-Key has already been used"}),
        )
        plan = _make_plan(client, clock, [_desired()])
        result = _make_executor(client, clock).execute(plan)[0]
        assert result.success
        assert result.error_kind == ErrorKind.IDEMPOTENCY_CONFLICT


class TestUpdate:
    def test_put_sends_full_task_body(self, api, client, clock):
        api.add_project("p1", "NY25001")
        task = api.add_task("p1", "manhour", rate="50.00", minutes=120, currency="SGD")
        plan = _make_plan(client, clock, [_desired(name="Manhour", rate=6000, minutes=90)])
        assert plan.items[0].action == PlanAction.UPDATE

        result = _make_executor(client, clock).execute(plan)[0]
        assert result.success
        assert result.old_rate_minor_units == 5000
        assert result.new_rate_minor_units == 6000

        put = api.requests[-1]
        assert put.method == "PUT"
        assert put.url.path.endswith(f"/Tasks/{task['taskId']}")
        assert json.loads(put.content) == {
            "name": "manhour",
            "rate": {"currency": "SGD", "value": "60.00"},
            "chargeType": "TIME",
            "estimateMinutes": 90,
        }

    def test_payload_value_is_a_decimal_string(self, api, client, clock):
        api.add_project("p1", "NY25001")
        plan = _make_plan(client, clock, [_desired(rate=5)])
        payload = build_task_payload(plan.items[0], "SGD")
        assert payload["rate"] == {"currency": "SGD", "value": "0.05"}


class TestNoOpItems:
    def test_all_equal_means_zero_writes(self, api, client, clock):
        api.add_project("p1", "NY25001")
        api.add_task("p1", "Manhour", rate="50.00", minutes=120)
        plan = _make_plan(client, clock, [_desired()])

        results = _make_executor(client, clock).execute(plan)
        assert api.writes() == []
        assert results[0].action == PlanAction.SKIP
        assert results[0].success

    def test_no_match_is_benign(self, api, client, clock):
        api.add_project("p1", "NY25001")
        plan = _make_plan(client, clock, [_desired(parent_key="ZZ99999")])

        result = _make_executor(client, clock).execute(plan)[0]
        assert result.action == PlanAction.NO_MATCH
        assert result.error_kind == ErrorKind.PARENT_NOT_FOUND
        assert not result.is_failure
        assert api.writes() == []

    def test_dry_run_sends_no_writes(self, api, client, clock):
        api.add_project("p1", "NY25001")
        api.add_task("p1", "Manhour", rate="40.00")
        plan = _make_plan(client, clock, [_desired(), _desired(name="Overtime")])

        results = _make_executor(client, clock).execute(plan, dry_run=True)
        assert api.writes() == []
        assert all(r.dry_run and r.success for r in results)
        assert results[0].message.startswith("dry run:")


class TestRetries:
    def test_rate_limited_create_honors_retry_after(self, api, client, clock):
        api.add_project("p1", "NY25001")
        api.script("POST", "p1/Tasks", httpx.Response(429, json={}, headers={"Retry-After": "2"}))
        plan = _make_plan(client, clock, [_desired()])

        result = _make_executor(client, clock).execute(plan)[0]
        assert result.success
        assert result.retries == 1
        assert clock.sleeps[-1] >= 2.0
        assert len(api.writes()) == 2
        assert len(api.tasks["p1"]) == 1

    def test_exhausted_rate_limit_backs_off_exponentially(self, api, client, clock):
        api.add_project("p1", "NY25001")
        for _ in range(3):
            api.script("POST", "p1/Tasks", httpx.Response(429, json={"Message": "slow down"}))
        plan = _make_plan(client, clock, [_desired()])

        result = _make_executor(client, clock, backoff_base_seconds=1.0).execute(plan)[0]
        assert not result.success
        assert result.error_kind == ErrorKind.RATE_LIMITED
        assert result.retries == 2
        assert clock.sleeps == [1.0, 2.0]

    def test_server_error_on_write_is_not_retried(self, api, client, clock):
        api.add_project("p1", "NY25001")
        api.script("POST", "p1/Tasks", httpx.Response(500, text="oops"))
        plan = _make_plan(client, clock, [_desired()])

        result = _make_executor(client, clock).execute(plan)[0]
        assert not result.success
        assert result.error_kind == ErrorKind.TRANSIENT_NETWORK
        assert result.retries == 0
        assert len(api.writes()) == 1

    def test_validation_message_is_extracted(self, api, client, clock):
        api.add_project("p1", "NY25001")
        api.script(
            "POST", "p1/Tasks",
            httpx.Response(400, json={"ValidationErrors": [{"Message": "Rate must be positive"}]}),
        )
        plan = _make_plan(client, clock, [_desired()])

        result = _make_executor(client, clock).execute(plan)[0]
        assert result.error_kind == ErrorKind.VALIDATION_REJECTED
        assert result.http_status == 400
        assert result.message == "Rate must be positive"
        assert result.is_failure


class TestBatchAndAbort:
    def _seed(self, api, count):
        for i in range(1, count + 1):
            api.add_project(f"p{i}", f"NY2500{i}")

    def test_batch_cap_checked_before_any_write(self, api, client, clock):
        self._seed(api, 3)
        plan = _make_plan(client, clock, [_desired(parent_key=f"NY2500{i}") for i in range(1, 4)])

        with pytest.raises(BatchTooLargeError):
            _make_executor(client, clock, max_parents_per_run=2).execute(plan)
        assert api.writes() == []

    def test_auth_expired_stops_and_carries_partial_results(self, api, client, clock):
        self._seed(api, 3)
        api.add_task("p3", "Manhour")
        api.script("POST", "p2/Tasks", httpx.Response(401, json={"Message": "TokenExpired"}))
        desired = [_desired(parent_key=f"NY2500{i}") for i in range(1, 4)]
        plan = _make_plan(client, clock, desired)

        with pytest.raises(AuthExpiredError) as exc:
            _make_executor(client, clock, parent_concurrency=1).execute(plan)

        partial = exc.value.partial_results
        by_code = {r.parent_code: r for r in partial}
        assert by_code["NY25001"].success
        assert by_code["NY25002"].error_kind == ErrorKind.AUTH_EXPIRED
        # The skip on p3 needs no call and is still reported.
        assert by_code["NY25003"].action == PlanAction.SKIP
        assert [w[1] for w in api.writes()] == [
            "/projects.xro/2.0/Projects/p1/Tasks",
            "/projects.xro/2.0/Projects/p2/Tasks",
        ]

    def test_results_follow_plan_order_and_report_progress(self, api, client, clock):
        self._seed(api, 3)
        desired = [_desired(parent_key=f"NY2500{i}", name=n) for i in range(1, 4) for n in ("A", "B")]
        plan = _make_plan(client, clock, desired)
        seen = []
        executor = IdempotentExecutor(
            client,
            ExecutorConfig(parent_concurrency=3),
            sleep=clock.sleep,
            on_parent_done=lambda code, done, total: seen.append((code, total)),
        )

        results = executor.execute(plan)
        assert [r.entity_key for r in results] == [i.entity_key for i in plan.items]
        assert sorted(seen) == [("NY25001", 3), ("NY25002", 3), ("NY25003", 3)]


class TestConcurrency:
    """Parents run in a bounded pool; items under one parent never overlap."""

    def _make_tracking_client(self, api, clock, delay=0.02):
        lock = threading.Lock()
        in_flight = {}
        stats = {"peak": 0, "total": 0, "per_parent_peak": {}, "order": {}}

        def handler(request):
            if request.method != "POST":
                return api.handler(request)
            parent_id = request.url.path.split("/")[-2]
            with lock:
                in_flight[parent_id] = in_flight.get(parent_id, 0) + 1
                stats["total"] += 1
                stats["peak"] = max(stats["peak"], stats["total"])
                peaks = stats["per_parent_peak"]
                peaks[parent_id] = max(peaks.get(parent_id, 0), in_flight[parent_id])
                stats["order"].setdefault(parent_id, []).append(json.loads(request.content)["name"])
            time.sleep(delay)
            try:
                return api.handler(request)
            finally:
                with lock:
                    in_flight[parent_id] -= 1
                    stats["total"] -= 1

        client = AccountingClient(
            tenant_id="tenant-1",
            token_provider=lambda: "test-token",
            rate_budget=TenantRateBudget(RateBudgetConfig(), clock=clock, sleep=clock.sleep),
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        return client, stats

    def test_parents_bounded_and_items_sequential(self, api, clock):
        for i in range(1, 7):
            api.add_project(f"p{i}", f"NY2500{i}")
        client, stats = self._make_tracking_client(api, clock)
        names = ["A", "B", "C"]
        desired = [_desired(parent_key=f"NY2500{i}", name=n) for i in range(1, 7) for n in names]
        plan = _make_plan(client, clock, desired)

        results = _make_executor(client, clock, parent_concurrency=2).execute(plan)

        assert all(r.success for r in results)
        assert len(stats["per_parent_peak"]) == 6
        assert set(stats["per_parent_peak"].values()) == {1}
        assert 1 <= stats["peak"] <= 2
        assert all(order == names for order in stats["order"].values())
