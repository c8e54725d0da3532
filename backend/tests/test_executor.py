from __future__ import annotations

import asyncio

import pytest

from conftest import ConcurrencyTracker, FakeTool, make_registry
from coreflow.errors import PlanStateError
from coreflow.executor import WorkflowManager
from coreflow.models import ExecutionPlan, OperationStep, PlanStatus, StepStatus
from coreflow.permissions import StaticPermissions
from coreflow.policy import RecoveryPolicy, RetryPolicy
from coreflow.progress import CancellationToken, ProgressKind, ProgressStream
from coreflow.tools.base import ToolExecutionError


def _plan(registry, steps, *, approve=True) -> ExecutionPlan:
    """steps: list of (step_id, tool_name, deps, optional)."""
    plan = ExecutionPlan(
        intent="test",
        steps=[
            OperationStep(
                id=step_id,
                tool_name=tool,
                domain=registry.require(tool).domain,
                operation_type=registry.require(tool).capabilities[0],
                description=tool,
                dependencies=list(deps),
                optional=optional,
                retryable=registry.require(tool).retryable,
            )
            for step_id, tool, deps, optional in steps
        ],
    )
    if approve:
        plan.transition_to(PlanStatus.APPROVED)
    return plan


def _manager(registry, perms=None, **kwargs) -> WorkflowManager:
    perms = perms or StaticPermissions()
    recovery = RecoveryPolicy(registry, perms, RetryPolicy(backoff_base_ms=0))
    return WorkflowManager(registry, perms, recovery=recovery, **kwargs)


def test_dependent_starts_strictly_after_dependency_ends() -> None:
    registry = make_registry([FakeTool("cam", produces=("image",)), FakeTool("ocr", consumes=("image",))])
    plan = _plan(registry, [("step_1", "cam", [], False), ("step_2", "ocr", ["step_1"], False)])

    result = asyncio.run(_manager(registry).execute(plan))

    assert result.status == PlanStatus.COMPLETED
    assert plan.status == PlanStatus.COMPLETED
    capture, ocr = result.last_execution("step_1"), result.last_execution("step_2")
    assert ocr.started_at > capture.ended_at
    for ex in result.executions:
        assert ex.ended_at >= ex.started_at


def test_dependency_output_is_bound_into_dependent_parameters() -> None:
    consumer = FakeTool("consumer")
    registry = make_registry([FakeTool("producer"), consumer])
    plan = _plan(registry, [("step_1", "producer", [], False), ("step_2", "consumer", ["step_1"], False)])
    asyncio.run(_manager(registry).execute(plan))
    assert consumer.calls[0]["value"] == "producer-output"


def test_failed_required_step_skips_dependents_but_not_independent_branches() -> None:
    dependent = FakeTool("three")
    registry = make_registry(
        [FakeTool("one"), FakeTool("two", outcomes=[False, False]), dependent]
    )
    plan = _plan(
        registry,
        [
            ("step_1", "one", [], False),
            ("step_2", "two", [], False),
            ("step_3", "three", ["step_2"], False),
        ],
    )

    result = asyncio.run(_manager(registry).execute(plan))

    assert result.step_statuses == {
        "step_1": StepStatus.SUCCEEDED,
        "step_2": StepStatus.FAILED,
        "step_3": StepStatus.SKIPPED,
    }
    assert result.status == PlanStatus.PARTIALLY_COMPLETED
    assert dependent.calls == []
    assert result.last_execution("step_3") is None
    assert [e.attempt for e in result.executions if e.step_id == "step_2"] == [1, 2]
    assert "step_2" in result.errors["step_3"]


def test_retry_recovers_transient_failure() -> None:
    registry = make_registry([FakeTool("flaky", outcomes=[RuntimeError("boom"), True])])
    plan = _plan(registry, [("step_1", "flaky", [], False)])
    result = asyncio.run(_manager(registry).execute(plan))
    assert result.status == PlanStatus.COMPLETED
    assert [e.success for e in result.executions] == [False, True]
    assert "Unhandled tool error: boom" in result.executions[0].result


def test_substitute_alternate_tool_when_retries_are_not_allowed() -> None:
    registry = make_registry(
        [
            FakeTool("primary", capabilities=("geo",), outcomes=[False], retryable=False),
            FakeTool("backup", capabilities=("geo",)),
        ]
    )
    plan = _plan(registry, [("step_1", "primary", [], False)])
    result = asyncio.run(_manager(registry).execute(plan))
    assert result.status == PlanStatus.COMPLETED
    assert [e.tool_name for e in result.executions] == ["primary", "backup"]
    assert "substituted for primary" in result.executions[1].reasoning


def test_failed_optional_step_is_skipped_and_dependents_still_run() -> None:
    after = FakeTool("after")
    registry = make_registry([FakeTool("extra", outcomes=[False], retryable=False), after])
    plan = _plan(registry, [("step_1", "extra", [], True), ("step_2", "after", ["step_1"], False)])
    result = asyncio.run(_manager(registry).execute(plan))
    assert result.step_statuses["step_1"] == StepStatus.SKIPPED
    assert result.step_statuses["step_2"] == StepStatus.SUCCEEDED
    assert result.status == PlanStatus.PARTIALLY_COMPLETED
    assert len(after.calls) == 1


def test_block_passes_through_skipped_optional_step() -> None:
    middle = FakeTool("middle")
    last = FakeTool("last")
    registry = make_registry([FakeTool("first", outcomes=[False], retryable=False), middle, last])
    plan = _plan(
        registry,
        [
            ("step_1", "first", [], False),
            ("step_2", "middle", ["step_1"], True),
            ("step_3", "last", ["step_2"], False),
        ],
    )

    result = asyncio.run(_manager(registry).execute(plan))

    assert result.step_statuses == {
        "step_1": StepStatus.FAILED,
        "step_2": StepStatus.SKIPPED,
        "step_3": StepStatus.SKIPPED,
    }
    assert middle.calls == [] and last.calls == []
    assert "step_2" in result.errors["step_3"]
    assert result.status == PlanStatus.FAILED


def test_attempt_numbers_keep_counting_after_substitution() -> None:
    registry = make_registry(
        [
            FakeTool("primary", capabilities=("geo",), outcomes=[ToolExecutionError("sensor off")]),
            FakeTool("backup", capabilities=("geo",), outcomes=[False, True]),
        ]
    )
    plan = _plan(registry, [("step_1", "primary", [], False)])
    result = asyncio.run(_manager(registry).execute(plan))
    assert result.status == PlanStatus.COMPLETED
    assert [(e.tool_name, e.attempt) for e in result.executions] == [
        ("primary", 1),
        ("backup", 2),
        ("backup", 3),
    ]


def test_nothing_succeeds_means_failed() -> None:
    registry = make_registry([FakeTool("bad", outcomes=[False], retryable=False)])
    plan = _plan(registry, [("step_1", "bad", [], False)])
    result = asyncio.run(_manager(registry).execute(plan))
    assert result.status == PlanStatus.FAILED
    assert len(result.executions) == 1


def test_concurrency_is_bounded_by_worker_budget() -> None:
    tracker = ConcurrencyTracker()
    tools = [FakeTool(f"t{i}", delay=0.03, tracker=tracker) for i in range(5)]
    registry = make_registry(tools)
    plan = _plan(registry, [(f"step_{i}", f"t{i}", [], False) for i in range(5)])
    result = asyncio.run(_manager(registry, max_concurrency=2).execute(plan))
    assert result.status == PlanStatus.COMPLETED
    assert tracker.peak == 2


def test_cancel_before_start_runs_nothing() -> None:
    tool = FakeTool("one")
    registry = make_registry([tool])
    plan = _plan(registry, [("step_1", "one", [], False)])
    token = CancellationToken()
    token.cancel()
    result = asyncio.run(_manager(registry).execute(plan, cancel_token=token))
    assert result.status == PlanStatus.CANCELLED
    assert plan.status == PlanStatus.CANCELLED
    assert result.executions == []
    assert tool.calls == []


def test_cancel_mid_run_lets_in_flight_step_finish() -> None:
    second = FakeTool("second")
    registry = make_registry([FakeTool("slow", delay=0.1), second])
    plan = _plan(registry, [("step_1", "slow", [], False), ("step_2", "second", ["step_1"], False)])
    token = CancellationToken()

    async def scenario():
        task = asyncio.create_task(_manager(registry).execute(plan, cancel_token=token))
        await asyncio.sleep(0.02)
        token.cancel()
        return await task

    result = asyncio.run(scenario())
    assert result.status == PlanStatus.CANCELLED
    assert result.step_statuses["step_1"] == StepStatus.SUCCEEDED
    assert result.step_statuses["step_2"] == StepStatus.CANCELLED
    assert second.calls == []
    assert len(result.executions) == 1


def test_revoked_permission_fails_step_without_calling_tool() -> None:
    gps = FakeTool("gps", permissions=("location",))
    registry = make_registry([gps])
    perms = StaticPermissions(granted=["location"])
    plan = _plan(registry, [("step_1", "gps", [], False)])
    perms.revoke("location")
    result = asyncio.run(_manager(registry, perms).execute(plan))
    assert result.status == PlanStatus.FAILED
    assert gps.calls == []
    assert "Permission not granted: location" in result.executions[0].result
    assert len(result.executions) == 1


def test_step_timeout_is_recorded_as_failure() -> None:
    registry = make_registry([FakeTool("hang", delay=0.5, retryable=False)])
    plan = _plan(registry, [("step_1", "hang", [], False)])
    result = asyncio.run(_manager(registry, step_timeout_sec=0.05).execute(plan))
    assert result.status == PlanStatus.FAILED
    assert "timed out" in result.executions[0].result


def test_progress_events_are_ordered_per_step() -> None:
    registry = make_registry([FakeTool("a", delay=0.01), FakeTool("b", delay=0.01)])
    plan = _plan(registry, [("step_1", "a", [], False), ("step_2", "b", [], False)])

    async def scenario():
        stream = ProgressStream(64)
        result = await _manager(registry).execute(plan, stream)
        return result, stream.drain()

    result, events = asyncio.run(scenario())
    for step_id in ("step_1", "step_2"):
        mine = [e for e in events if e.step_id == step_id]
        assert [e.seq for e in mine] == list(range(1, len(mine) + 1))
        assert mine[0].kind == ProgressKind.STARTED
        assert ProgressKind.PROGRESS in [e.kind for e in mine]
        assert mine[-1].kind == ProgressKind.SUCCEEDED
    assert events[-1].kind == ProgressKind.PLAN_FINISHED


def test_callback_progress_target_is_accepted() -> None:
    registry = make_registry([FakeTool("a")])
    plan = _plan(registry, [("step_1", "a", [], False)])
    seen = []
    asyncio.run(_manager(registry).execute(plan, seen.append))
    assert [e.kind for e in seen][0] == ProgressKind.STARTED


def test_unapproved_plan_is_rejected() -> None:
    registry = make_registry([FakeTool("a")])
    plan = _plan(registry, [("step_1", "a", [], False)], approve=False)
    with pytest.raises(PlanStateError):
        asyncio.run(_manager(registry).execute(plan))


def test_execution_callback_sees_every_attempt() -> None:
    registry = make_registry([FakeTool("flaky", outcomes=[False, True])])
    plan = _plan(registry, [("step_1", "flaky", [], False)])
    recorded = []
    asyncio.run(_manager(registry, on_execution=recorded.append).execute(plan))
    assert [e.attempt for e in recorded] == [1, 2]
