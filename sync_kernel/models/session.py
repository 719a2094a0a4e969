"""Session and Step records for the orchestrator's state machine."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"                     # Settled, but some steps or items failed
    FAILED = "failed"


class Step(BaseModel):
    """One named stage of a workflow."""

    id: str
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    result: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class FailureEntry(BaseModel):
    """A real failure requiring attention."""

    entity_key: str
    parent_code: Optional[str] = None
    entity_name: Optional[str] = None
    error_kind: str
    http_status: Optional[int] = None
    message: Optional[str] = None


class SessionSummary(BaseModel):
    """
    Aggregate of one run.

    `failures` and `not_found` are kept apart: a parent missing from the
    active remote set is expected and frequent, and must never read as an error.
    """

    created: int = 0
    updated: int = 0
    skipped: int = 0
    not_found: int = 0
    failed: int = 0
    idempotent_replays: int = 0             # Creates answered with a conflict (soft success)
    fetch_failures: int = 0                 # Parents whose tasks could not be read
    dry_run: bool = False
    failures: List[FailureEntry] = []
    not_found_entities: List[str] = []
    notes: List[str] = []


class Session(BaseModel):
    """One workflow invocation for one tenant."""

    id: str
    tenant_id: str
    workflow: str
    steps: List[Step]
    started_at: datetime
    ended_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.INITIALIZING
    summary: Optional[SessionSummary] = None
    error: Optional[str] = None

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)
