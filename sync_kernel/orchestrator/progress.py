"""
Progress Orchestrator — step state machine for one workflow session.

Behavioral Contract:
- Steps move pending -> running -> completed (with a result view) or
  running -> error (with the message). A step can also be skipped.
- Every transition is reported to the caller's sink. A sink that raises
  (e.g. a closed stream) is ignored; the work carries on.
- A failing step only stops the workflow when the caller marks it fatal.
  Later independent steps (reports) still run against partial results.
- `finalize` settles the session exactly once and hands it to the store.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, Tuple, TypeVar
from uuid import uuid4

from sync_kernel.models.progress import ProgressEvent, ProgressEventType
from sync_kernel.models.session import (
    Session,
    SessionStatus,
    SessionSummary,
    Step,
    StepStatus,
)
from sync_kernel.store.sessions import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProgressSink = Callable[[ProgressEvent], None]

# (id, name, description)
StepSpec = Tuple[str, str, str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProgressOrchestrator:
    def __init__(
        self,
        tenant_id: str,
        workflow: str,
        steps: Sequence[StepSpec],
        sink: Optional[ProgressSink] = None,
        store: Optional[SessionStore] = None,
    ):
        self.session = Session(
            id=f"sess-{uuid4().hex[:12]}",
            tenant_id=tenant_id,
            workflow=workflow,
            steps=[Step(id=i, name=n, description=d) for i, n, d in steps],
            started_at=_now(),
        )
        self._sink = sink
        self._store = store
        self._emit_lock = threading.Lock()

    # --- Events ---

    def emit(self, type: ProgressEventType, **fields: Any) -> None:
        """Deliver one event. Never raises."""
        if self._sink is None:
            return
        event = ProgressEvent(type=type, session_id=self.session.id, **fields)
        with self._emit_lock:
            try:
                self._sink(event)
            except Exception as e:
                logger.debug("Progress sink rejected %s event: %s", type.value, e)

    def log(self, message: str, step: Optional[str] = None) -> None:
        logger.info("[%s] %s", self.session.id, message)
        self.emit(ProgressEventType.LOG, message=message, step=step)

    # --- Steps ---

    def _step(self, step_id: str) -> Step:
        step = self.session.get_step(step_id)
        if step is None:
            raise KeyError(f"Unknown step: {step_id}")
        return step

    def _transition(self, step: Step, status: StepStatus, message: Optional[str] = None) -> None:
        step.status = status
        if status == StepStatus.RUNNING:
            step.started_at = _now()
        else:
            step.ended_at = _now()
        self.emit(
            ProgressEventType.PROGRESS,
            step=step.id,
            status=status.value,
            message=message or step.name,
            data=step.result,
        )

    def start(self) -> None:
        self.session.status = SessionStatus.RUNNING
        self.log(f"Started {self.session.workflow} for tenant {self.session.tenant_id}")

    def run_step(
        self,
        step_id: str,
        work: Callable[[], T],
        result_view: Optional[Callable[[T], Any]] = None,
        fatal: bool = False,
    ) -> Optional[T]:
        """
        Run one step. Returns the work's value, or None if it failed and
        `fatal` is False. Fatal failures re-raise after the step is marked.
        """
        step = self._step(step_id)
        self._transition(step, StepStatus.RUNNING)
        try:
            value = work()
        except Exception as e:
            step.error = str(e)
            logger.warning("Step %s failed: %s", step_id, e)
            self._transition(step, StepStatus.ERROR, message=step.error)
            self.emit(ProgressEventType.ERROR, step=step_id, message=step.error)
            if fatal:
                raise
            return None

        if result_view is not None:
            step.result = result_view(value)
        self._transition(step, StepStatus.COMPLETED)
        return value

    def skip_step(self, step_id: str, reason: str) -> None:
        step = self._step(step_id)
        step.error = None
        step.result = {"skipped": reason}
        self._transition(step, StepStatus.SKIPPED, message=reason)

    def pending_steps(self) -> List[Step]:
        return [s for s in self.session.steps if s.status == StepStatus.PENDING]

    # --- Settlement ---

    def finalize(
        self,
        summary: Optional[SessionSummary] = None,
        error: Optional[str] = None,
        attachments: Optional[dict] = None,
    ) -> Session:
        """Settle the session. `attachments` ride along on the complete event."""
        for step in self.pending_steps():
            step.status = StepStatus.SKIPPED
        session = self.session
        session.summary = summary
        session.error = error
        session.ended_at = _now()

        step_failed = any(s.status == StepStatus.ERROR for s in session.steps)
        item_failed = summary is not None and (summary.failed > 0 or summary.fetch_failures > 0)
        if error is not None:
            session.status = SessionStatus.FAILED
        elif step_failed or item_failed:
            session.status = SessionStatus.PARTIAL
        else:
            session.status = SessionStatus.COMPLETED

        if self._store is not None:
            try:
                self._store.save(session)
            except sqlite3.Error as e:
                logger.error("Could not persist session %s: %s", session.id, e)

        self.emit(
            ProgressEventType.COMPLETE,
            status=session.status.value,
            message=error,
            data={
                "summary": summary.model_dump(mode="json") if summary else None,
                **(attachments or {}),
            },
        )
        logger.info("Session %s settled as %s", session.id, session.status.value)
        return session
