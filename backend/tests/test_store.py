from __future__ import annotations

from datetime import datetime, timezone

from coreflow.events import ExecutionUpdate, FailureUpdate, PlanningUpdate
from coreflow.models import ExecutionPlan, OperationStep, ToolExecution
from coreflow.risk import RiskLevel


def test_messages_are_returned_oldest_first_and_limited(store) -> None:
    for i in range(5):
        store.append_message("c1", "user", f"m{i}")
    store.append_message("c2", "user", "other")

    recent = store.recent_messages("c1", limit=3)
    assert [m.content for m in recent] == ["m2", "m3", "m4"]
    assert store.recent_messages("c1", limit=0) == []


def test_audit_events_round_trip_with_phase_tags(store) -> None:
    plan = ExecutionPlan(
        intent="x",
        risk_level=RiskLevel.HIGH,
        steps=[
            OperationStep(
                id="step_1",
                tool_name="location_lookup",
                domain="location",
                operation_type="location.current",
                description="where",
                risk_level=RiskLevel.HIGH,
            )
        ],
    )
    now = datetime.now(timezone.utc)
    store.append_event("t1", PlanningUpdate(plan=plan))
    store.append_event(
        "t1",
        ExecutionUpdate(
            execution=ToolExecution(
                step_id="step_1",
                tool_name="location_lookup",
                result="near Berlin",
                started_at=now,
                ended_at=now,
                success=True,
            )
        ),
    )
    store.append_event("t2", FailureUpdate(stage="planning", error_type="PlanningError", message="no"))

    events = store.list_events("t1")
    assert [e.phase for e in events] == ["planning", "execution"]
    assert isinstance(events[0], PlanningUpdate)
    assert events[0].plan.risk_level == RiskLevel.HIGH
    assert events[0].plan.steps[0].risk_level == RiskLevel.HIGH
    assert events[1].execution.result == "near Berlin"
    assert [e.phase for e in store.list_events("t1", "execution")] == ["execution"]
    assert store.list_events("missing") == []
