"""Tests for core data models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from sync_kernel.models import (
    ActionPlan,
    ActionPlanItem,
    ChargeCategory,
    DesiredEntity,
    ErrorKind,
    ExecutionResult,
    PlanAction,
    ProgressEvent,
    ProgressEventType,
    RateBudgetConfig,
    RemoteEntity,
    Session,
    SessionStatus,
    Step,
    StepStatus,
)


def _item(action: PlanAction, parent_id="p1", name="Manhour") -> ActionPlanItem:
    return ActionPlanItem(
        entity_key=f"NY25001/{parent_id}/{name}",
        action=action,
        parent_code="NY25001",
        parent_remote_id=parent_id if action != PlanAction.NO_MATCH else None,
        desired=DesiredEntity(parent_key="NY25001", name=name, rate_minor_units=5000, duration_minutes=60),
        reason="test",
    )


class TestDesiredEntity:
    def test_defaults(self):
        entity = DesiredEntity(parent_key="NY25001", name="Manhour", rate_minor_units=5000, duration_minutes=60)
        assert entity.category == ChargeCategory.TIME
        assert entity.currency is None
        assert entity.idempotency_key == ""

    def test_negative_duration_rejected(self):
        with pytest.raises(ValidationError):
            DesiredEntity(parent_key="X", name="Y", rate_minor_units=1, duration_minutes=-1)

    def test_rate_must_be_integral(self):
        with pytest.raises(ValidationError):
            DesiredEntity(parent_key="X", name="Y", rate_minor_units=50.5, duration_minutes=1)

    def test_category_from_string(self):
        entity = RemoteEntity(
            remote_id="t1", parent_remote_id="p1", name="X",
            rate_minor_units=1, duration_minutes=1, category="FIXED",
        )
        assert entity.category == ChargeCategory.FIXED


class TestActionPlan:
    def test_is_mutation(self):
        assert _item(PlanAction.CREATE).is_mutation
        assert _item(PlanAction.UPDATE).is_mutation
        assert not _item(PlanAction.SKIP).is_mutation
        assert not _item(PlanAction.NO_MATCH).is_mutation

    def test_items_by_parent_keeps_order_and_drops_passive_items(self):
        plan = ActionPlan(
            tenant_id="t1",
            run_timestamp=1,
            items=[
                _item(PlanAction.CREATE, "p1", "A"),
                _item(PlanAction.SKIP, "p1", "B"),
                _item(PlanAction.UPDATE, "p2", "C"),
                _item(PlanAction.NO_MATCH, "p3", "D"),
                _item(PlanAction.UPDATE, "p1", "E"),
            ],
        )
        grouped = plan.items_by_parent()
        assert list(grouped) == ["p1", "p2"]
        assert [i.desired.name for i in grouped["p1"]] == ["A", "E"]


class TestExecutionResult:
    def test_not_found_is_not_a_failure(self):
        result = ExecutionResult(
            entity_key="k", action=PlanAction.NO_MATCH, success=True, error_kind=ErrorKind.PARENT_NOT_FOUND
        )
        assert not result.is_failure

    def test_rejected_is_a_failure(self):
        result = ExecutionResult(
            entity_key="k", action=PlanAction.UPDATE, success=False, error_kind=ErrorKind.VALIDATION_REJECTED
        )
        assert result.is_failure

    def test_serializes_enum_values(self):
        result = ExecutionResult(entity_key="k", action=PlanAction.CREATE, success=True)
        data = result.model_dump(mode="json")
        assert data["action"] == "create"
        assert data["error_kind"] == "none"


class TestSession:
    def test_get_step(self):
        session = Session(
            id="s1",
            tenant_id="t1",
            workflow="timesheet_sync",
            steps=[Step(id="fetch", name="Fetch")],
            started_at=datetime.now(timezone.utc),
        )
        assert session.status == SessionStatus.INITIALIZING
        assert session.get_step("fetch").status == StepStatus.PENDING
        assert session.get_step("missing") is None


class TestConfigAndEvents:
    def test_minute_limit_keeps_headroom(self):
        assert RateBudgetConfig().minute_limit == 58
        assert RateBudgetConfig(advertised_minute_limit=2, minute_headroom=5).minute_limit == 1

    def test_progress_event_timestamp(self):
        event = ProgressEvent(type=ProgressEventType.LOG, session_id="s1", message="hi")
        assert event.emitted_at.tzinfo is not None
        assert event.model_dump(mode="json")["type"] == "log"
