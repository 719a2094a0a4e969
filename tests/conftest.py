"""Shared fakes: an in-memory accounting API behind httpx.MockTransport, and a fake clock."""

import json
import threading
from typing import Dict, List, Optional

import httpx
import pytest

from sync_kernel.models.config import RateBudgetConfig
from sync_kernel.rate_budget.budget import TenantRateBudget
from sync_kernel.remote.accounting import AccountingClient


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeAccountingApi:
    """
    Projects, tasks and quotes held in memory.

    `script()` queues one-shot responses that take priority over the
    normal routing, for injecting 429s, 5xx, validation errors and so on.
    """

    def __init__(self):
        self.projects: List[dict] = []
        self.tasks: Dict[str, List[dict]] = {}
        self.quotes: List[dict] = []
        self.calls: List[tuple] = []
        self.requests: List[httpx.Request] = []
        self.used_keys = set()
        self._scripted: List[tuple] = []
        self._next_id = 1
        self._lock = threading.Lock()

    # --- Setup ---

    def add_project(self, project_id: str, name: str, status: str = "INPROGRESS") -> dict:
        project = {"projectId": project_id, "name": name, "status": status}
        self.projects.append(project)
        self.tasks.setdefault(project_id, [])
        return project

    def add_task(
        self,
        project_id: str,
        name: str,
        rate: str = "50.00",
        minutes: int = 120,
        charge_type: str = "TIME",
        currency: str = "SGD",
        task_id: Optional[str] = None,
    ) -> dict:
        task = {
            "taskId": task_id or self._new_id("task"),
            "projectId": project_id,
            "name": name,
            "rate": {"currency": currency, "value": rate},
            "chargeType": charge_type,
            "estimateMinutes": minutes,
            "status": "ACTIVE",
        }
        self.tasks.setdefault(project_id, []).append(task)
        return task

    def script(self, method: str, path_fragment: str, response: httpx.Response) -> None:
        self._scripted.append((method, path_fragment, response))

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    # --- Inspection ---

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("POST", "PUT")]

    # --- Transport ---

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            return self._route(request)

    def _route(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        self.requests.append(request)

        for i, (m, fragment, response) in enumerate(self._scripted):
            if m == method and fragment in path:
                del self._scripted[i]
                return response

        parts = path.strip("/").split("/")
        params = request.url.params
        page = int(params.get("page", 1))
        size = int(params.get("pageSize", 100))

        if parts[:3] == ["projects.xro", "2.0", "Projects"]:
            if len(parts) == 3 and method == "GET":
                states = params.get("states")
                rows = [p for p in self.projects if not states or p["status"] == states]
                return httpx.Response(200, json={"items": rows[(page - 1) * size: page * size]})

            project_id = parts[3]
            if project_id not in self.tasks:
                return httpx.Response(404, json={"Message": "Project not found"})
            tasks = self.tasks[project_id]

            if len(parts) == 5 and method == "GET":
                return httpx.Response(200, json={"items": tasks[(page - 1) * size: page * size]})

            if len(parts) == 5 and method == "POST":
                key = request.headers.get("Idempotency-Key")
                if key in self.used_keys:
                    return httpx.Response(409, json={"Message": "Idempotency key already used"})
                self.used_keys.add(key)
                body = json.loads(request.content)
                task = dict(body, taskId=self._new_id("task"), projectId=project_id)
                tasks.append(task)
                return httpx.Response(201, json=task)

            if len(parts) == 6 and method == "PUT":
                body = json.loads(request.content)
                for task in tasks:
                    if task["taskId"] == parts[5]:
                        task.update(body)
                        return httpx.Response(204)
                return httpx.Response(404, json={"Message": "Task not found"})

        if parts == ["api.xro", "2.0", "Quotes"] and method == "GET":
            return httpx.Response(200, json={"Quotes": self.quotes[(page - 1) * 100: page * 100]})

        return httpx.Response(404, json={"Message": f"No route for {method} {path}"})


def make_client(
    api: FakeAccountingApi,
    tenant_id: str = "tenant-1",
    budget: Optional[TenantRateBudget] = None,
    clock: Optional[FakeClock] = None,
) -> AccountingClient:
    clock = clock or FakeClock()
    return AccountingClient(
        tenant_id=tenant_id,
        token_provider=lambda: "test-token",
        rate_budget=budget or TenantRateBudget(RateBudgetConfig(), clock=clock, sleep=clock.sleep),
        http_client=httpx.Client(transport=httpx.MockTransport(api.handler)),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api():
    return FakeAccountingApi()


@pytest.fixture
def client(api, clock):
    return make_client(api, clock=clock)


@pytest.fixture
def client_factory():
    return make_client
