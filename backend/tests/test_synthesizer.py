from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from conftest import FakeGenerator
from coreflow.models import (
    ChatMessage,
    ExecutionPlan,
    OperationStep,
    PlanStatus,
    StepStatus,
    ToolExecution,
    WorkflowResult,
)
from coreflow.synthesizer import ResultSynthesizer

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _execution(step_id, tool, success, result) -> ToolExecution:
    return ToolExecution(
        step_id=step_id,
        tool_name=tool,
        result=result,
        started_at=T0,
        ended_at=T0 + timedelta(milliseconds=5),
        success=success,
    )


def _plan() -> ExecutionPlan:
    return ExecutionPlan(
        intent="photo then text",
        steps=[
            OperationStep(id="step_1", tool_name="camera_capture", domain="camera", operation_type="c", description="d"),
            OperationStep(id="step_2", tool_name="text_recognition", domain="vision", operation_type="o", description="d", dependencies=["step_1"]),
        ],
    )


def test_prompt_lists_outcomes_and_generation_options() -> None:
    generator = FakeGenerator("The photo says OPEN.")
    synth = ResultSynthesizer(generator, model="m1", temperature=0.3)
    executions = [
        _execution("step_1", "camera_capture", True, "Captured photo /a.jpg"),
        _execution("step_2", "text_recognition", True, "OPEN 9-17"),
    ]
    result = asyncio.run(synth.synthesize("read it", _plan(), executions))

    assert result.text == "The photo says OPEN."
    assert not result.used_fallback
    call = generator.calls[0]
    assert call["model"] == "m1"
    assert "step_2 text_recognition: succeeded | OPEN 9-17" in call["prompt"]
    assert call["options"]["temperature"] == 0.3
    assert call["options"]["num_ctx"] >= 1024


def test_generation_failure_falls_back_to_verbatim_template() -> None:
    synth = ResultSynthesizer(FakeGenerator(fail=True), model="m")
    executions = [
        _execution("step_1", "camera_capture", True, "Captured photo /a.jpg"),
        _execution("step_2", "text_recognition", False, "No text found in the image"),
    ]
    result = asyncio.run(synth.synthesize("read it", _plan(), executions))
    assert result.used_fallback
    assert "backend unavailable" in result.error
    assert "camera_capture (step_1) succeeded: Captured photo /a.jpg" in result.text
    assert "text_recognition (step_2) failed: No text found in the image" in result.text


def test_timeout_and_empty_text_fall_back() -> None:
    slow = ResultSynthesizer(FakeGenerator(delay=0.2), model="m", timeout_sec=0.01)
    empty = ResultSynthesizer(FakeGenerator("   "), model="m")
    executions = [_execution("step_1", "camera_capture", True, "ok")]
    assert asyncio.run(slow.synthesize("x", _plan(), executions)).used_fallback
    assert asyncio.run(empty.synthesize("x", _plan(), executions)).used_fallback


def test_all_failed_fallback_lists_every_execution() -> None:
    synth = ResultSynthesizer(FakeGenerator(fail=True), model="m")
    plan = ExecutionPlan(
        intent="three things",
        steps=[
            OperationStep(id="step_1", tool_name="a", domain="t", operation_type="a", description="d"),
            OperationStep(id="step_2", tool_name="b", domain="t", operation_type="b", description="d"),
            OperationStep(id="step_3", tool_name="c", domain="t", operation_type="c", description="d"),
        ],
    )
    executions = [
        _execution("step_1", "a", False, "a failed"),
        _execution("step_2", "b", False, "b failed"),
    ]
    workflow = WorkflowResult(
        plan_id=plan.id,
        status=PlanStatus.FAILED,
        executions=executions,
        step_statuses={
            "step_1": StepStatus.FAILED,
            "step_2": StepStatus.FAILED,
            "step_3": StepStatus.CANCELLED,
        },
        errors={"step_3": "not dispatched"},
    )
    text = asyncio.run(synth.synthesize("x", plan, executions, None, workflow)).text

    assert "every step failed" in text
    assert "The last error was: b failed" in text
    assert "- a (step_1) failed: a failed" in text
    assert "- b (step_2) failed: b failed" in text
    assert "- step_3 was cancelled: not dispatched" in text


def test_skipped_steps_appear_in_summary() -> None:
    synth = ResultSynthesizer(FakeGenerator(), model="m")
    workflow = WorkflowResult(
        plan_id="p",
        status=PlanStatus.FAILED,
        step_statuses={"step_1": StepStatus.FAILED, "step_2": StepStatus.SKIPPED},
        errors={"step_1": "camera busy", "step_2": "Dependency 'step_1' did not succeed"},
    )
    executions = [_execution("step_1", "camera_capture", False, "camera busy")]
    summary = synth.summarize(_plan(), executions, workflow)
    assert summary[-1] == {
        "step_id": "step_2",
        "tool": "text_recognition",
        "outcome": "skipped",
        "snippet": "Dependency 'step_1' did not succeed",
    }


def test_prompt_is_bounded_by_dropping_old_history() -> None:
    generator = FakeGenerator()
    synth = ResultSynthesizer(generator, model="m", max_prompt_chars=1200, history_limit=10)
    history = [ChatMessage(role="user", content=f"message {i} " + "x" * 300) for i in range(10)]
    executions = [_execution("step_1", "camera_capture", True, "ok")]
    asyncio.run(synth.synthesize("x", _plan(), executions, history))
    prompt = generator.calls[0]["prompt"]
    assert len(prompt) <= 1200
    assert "message 9" in prompt
    assert "message 0" not in prompt


def test_direct_reply_uses_generator_and_has_fallback() -> None:
    ok = asyncio.run(ResultSynthesizer(FakeGenerator("Hi!"), model="m").respond_directly("hello"))
    assert ok.text == "Hi!"
    failed = asyncio.run(ResultSynthesizer(FakeGenerator(fail=True), model="m").respond_directly("hello"))
    assert failed.used_fallback and failed.text
