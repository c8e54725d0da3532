from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Union

from coreflow.errors import ExecutionError
from coreflow.models import (
    ExecutionPlan,
    OperationStep,
    PlanStatus,
    StepStatus,
    ToolExecution,
    WorkflowResult,
    utc_now,
)
from coreflow.permissions import PermissionState, missing_permissions
from coreflow.policy import RecoveryAction, RecoveryPolicy, RetryState
from coreflow.progress import (
    CallbackSink,
    CancellationToken,
    ProgressEvent,
    ProgressKind,
    ProgressSink,
    StepProgress,
)
from coreflow.tools.base import BaseTool, ToolExecutionError
from coreflow.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

ProgressTarget = Union[ProgressSink, Callable[[ProgressEvent], None], None]
ExecutionCallback = Callable[[ToolExecution], None]


class MonotonicClock:
    """Wall-clock timestamps that strictly increase within one run."""

    def __init__(self) -> None:
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = utc_now()
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(microseconds=1)
        self._last = current
        return current


class _Run:
    def __init__(self, plan: ExecutionPlan, progress: StepProgress, token: CancellationToken) -> None:
        self.plan = plan
        self.progress = progress
        self.token = token
        self.clock = MonotonicClock()
        self.retry_state = RetryState()
        self.statuses: Dict[str, StepStatus] = {s.id: StepStatus.PENDING for s in plan.steps}
        self.outputs: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, str] = {}
        self.blocked: Set[str] = set()
        self.executions: List[ToolExecution] = []


class WorkflowManager:
    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionState,
        *,
        recovery: Optional[RecoveryPolicy] = None,
        max_concurrency: int = 2,
        step_timeout_sec: float = 60.0,
        on_execution: Optional[ExecutionCallback] = None,
    ) -> None:
        self.registry = registry
        self.permissions = permissions
        self.recovery = recovery or RecoveryPolicy(registry, permissions)
        self.max_concurrency = max(1, max_concurrency)
        self.step_timeout_sec = step_timeout_sec
        self.on_execution = on_execution

    async def execute(
        self,
        plan: ExecutionPlan,
        on_progress: ProgressTarget = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_execution: Optional[ExecutionCallback] = None,
    ) -> WorkflowResult:
        sink = _as_sink(on_progress)
        token = cancel_token or CancellationToken()
        run = _Run(plan, StepProgress(sink, plan.id), token)
        record = on_execution or self.on_execution

        if token.cancelled:
            plan.transition_to(PlanStatus.CANCELLED)
        else:
            plan.transition_to(PlanStatus.EXECUTING)
            logger.info("[EXEC] plan=%s steps=%d slots=%d", plan.id, len(plan.steps), self.max_concurrency)
            await self._schedule(run, asyncio.Semaphore(self.max_concurrency), record)

        for step_id, status in run.statuses.items():
            if status == StepStatus.PENDING:
                run.statuses[step_id] = StepStatus.CANCELLED
                run.progress.emit(step_id, ProgressKind.CANCELLED, "not dispatched")

        final = _final_status(run)
        if not plan.is_terminal:
            plan.transition_to(final)
        run.progress.emit(None, ProgressKind.PLAN_FINISHED, final.value)
        logger.info(
            "[EXEC] plan=%s status=%s executions=%d",
            plan.id,
            final.value,
            len(run.executions),
        )
        return WorkflowResult(
            plan_id=plan.id,
            status=final,
            executions=run.executions,
            step_statuses=run.statuses,
            outputs=run.outputs,
            errors=run.errors,
        )

    async def _schedule(
        self,
        run: _Run,
        slots: asyncio.Semaphore,
        record: Optional[ExecutionCallback],
    ) -> None:
        running: Dict[str, asyncio.Task] = {}
        while True:
            if not run.token.cancelled:
                self._cascade_skips(run)
                for step in run.plan.steps:
                    if run.statuses[step.id] != StepStatus.PENDING:
                        continue
                    if not _ready(run, step):
                        continue
                    run.statuses[step.id] = StepStatus.RUNNING
                    running[step.id] = asyncio.create_task(self._run_step(run, step, slots, record))
            if not running:
                return

            waiters = set(running.values())
            cancel_wait: Optional[asyncio.Task] = None
            if not run.token.cancelled:
                cancel_wait = asyncio.create_task(run.token.wait())
                waiters.add(cancel_wait)
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

            for step_id, task in list(running.items()):
                if task.done():
                    running.pop(step_id)
                    run.statuses[step_id] = task.result()

    def _cascade_skips(self, run: _Run) -> None:
        changed = True
        while changed:
            changed = False
            for step in run.plan.steps:
                if run.statuses[step.id] != StepStatus.PENDING:
                    continue
                blocker = _blocking_dependency(run, step)
                if blocker is None:
                    continue
                run.statuses[step.id] = StepStatus.SKIPPED
                run.blocked.add(step.id)
                run.errors[step.id] = f"Dependency '{blocker}' did not succeed"
                run.progress.emit(step.id, ProgressKind.SKIPPED, run.errors[step.id])
                logger.info("[EXEC] step=%s skipped, blocked by %s", step.id, blocker)
                changed = True

    async def _run_step(
        self,
        run: _Run,
        step: OperationStep,
        slots: asyncio.Semaphore,
        record: Optional[ExecutionCallback],
    ) -> StepStatus:
        async with slots:
            tool_name = step.tool_name
            tried = [tool_name]
            attempt = 1
            while True:
                if attempt > 1 and run.token.cancelled:
                    run.errors[step.id] = "Cancelled before retry"
                    run.progress.emit(step.id, ProgressKind.CANCELLED, run.errors[step.id])
                    return StepStatus.CANCELLED
                run.progress.emit(step.id, ProgressKind.STARTED, f"{tool_name} attempt {attempt}")
                execution, data, retryable = await self._attempt(run, step, tool_name, attempt)
                if tool_name != step.tool_name:
                    execution.reasoning = execution.reasoning or f"substituted for {step.tool_name}"
                run.executions.append(execution)
                if record is not None:
                    record(execution)

                if execution.success:
                    run.outputs[step.id] = data
                    run.progress.emit(step.id, ProgressKind.SUCCEEDED, execution.result)
                    return StepStatus.SUCCEEDED

                logger.warning("[EXEC] step=%s tool=%s failed: %s", step.id, tool_name, execution.result)
                if run.token.cancelled:
                    run.errors[step.id] = execution.result
                    run.progress.emit(step.id, ProgressKind.FAILED, execution.result)
                    return StepStatus.FAILED

                decision = self.recovery.handle_failure(
                    step,
                    execution.result,
                    state=run.retry_state,
                    current_tool=tool_name,
                    tried_tools=tried,
                    retryable=retryable,
                )
                if decision.action == RecoveryAction.RETRY:
                    run.retry_state.mark_retry(step.id)
                    attempt += 1
                    run.progress.emit(step.id, ProgressKind.RETRYING, decision.reason)
                    await asyncio.sleep(decision.delay_ms / 1000.0)
                    continue
                if decision.action == RecoveryAction.SUBSTITUTE and decision.substitute_tool:
                    tool_name = decision.substitute_tool
                    tried.append(tool_name)
                    attempt += 1
                    run.progress.emit(step.id, ProgressKind.SUBSTITUTED, decision.reason)
                    continue

                run.errors[step.id] = execution.result
                if decision.action == RecoveryAction.SKIP:
                    run.progress.emit(step.id, ProgressKind.SKIPPED, decision.reason)
                    return StepStatus.SKIPPED
                run.progress.emit(step.id, ProgressKind.FAILED, decision.reason)
                return StepStatus.FAILED

    async def _attempt(
        self, run: _Run, step: OperationStep, tool_name: str, attempt: int
    ) -> tuple[ToolExecution, Dict[str, Any], bool]:
        tool = self.registry.get(tool_name)
        params = _bind_inputs(run, step, tool)
        data: Dict[str, Any] = {}
        retryable = True
        started = run.clock.now()
        try:
            if tool is None:
                raise ExecutionError(f"Unknown tool '{tool_name}'", step_id=step.id)
            missing = missing_permissions(tool.required_permissions, self.permissions)
            if missing:
                raise ExecutionError(
                    f"Permission not granted: {', '.join(missing)}", step_id=step.id
                )
            result = await asyncio.wait_for(
                tool.execute_streaming(params, run.progress.for_step(step.id)),
                timeout=self.step_timeout_sec,
            )
            success = result.success
            message = result.message or ("ok" if success else "Tool reported failure")
            data = dict(result.data)
        except asyncio.TimeoutError:
            success, message = False, f"Step timed out after {self.step_timeout_sec:g}s"
        except ExecutionError as exc:
            success, message, retryable = False, str(exc), False
        except ToolExecutionError as exc:
            success, message, retryable = False, str(exc), False
        except Exception as exc:  # noqa: BLE001
            success, message = False, f"Unhandled tool error: {exc}"
        ended = run.clock.now()

        execution = ToolExecution(
            step_id=step.id,
            tool_name=tool_name,
            arguments=params,
            result=message,
            started_at=started,
            ended_at=ended,
            success=success,
            reasoning=None if success else message,
            attempt=attempt,
        )
        return execution, data, retryable


def _as_sink(target: ProgressTarget) -> Optional[ProgressSink]:
    if target is None:
        return None
    if hasattr(target, "publish"):
        return target  # type: ignore[return-value]
    return CallbackSink(target)  # type: ignore[arg-type]


def _dependency_ok(run: _Run, dep_id: str) -> bool:
    status = run.statuses.get(dep_id)
    if status == StepStatus.SUCCEEDED:
        return True
    if status != StepStatus.SKIPPED or dep_id in run.blocked:
        return False
    dep = run.plan.step(dep_id)
    return dep is not None and dep.optional


def _ready(run: _Run, step: OperationStep) -> bool:
    return all(_dependency_ok(run, d) for d in step.dependencies)


def _blocking_dependency(run: _Run, step: OperationStep) -> Optional[str]:
    for dep in step.dependencies:
        status = run.statuses.get(dep)
        if status in (StepStatus.FAILED, StepStatus.CANCELLED):
            return dep
        if status == StepStatus.SKIPPED and not _dependency_ok(run, dep):
            return dep
    return None


def _bind_inputs(run: _Run, step: OperationStep, tool: Optional[BaseTool]) -> Dict[str, Any]:
    params = dict(step.parameters)
    if tool is None:
        return params
    fields = tool.input_model.model_fields
    for dep in step.dependencies:
        for key, value in run.outputs.get(dep, {}).items():
            if key in fields and key not in params:
                params[key] = value
    return params


def _final_status(run: _Run) -> PlanStatus:
    if run.token.cancelled:
        return PlanStatus.CANCELLED
    statuses = list(run.statuses.values())
    succeeded = sum(1 for s in statuses if s == StepStatus.SUCCEEDED)
    if succeeded == len(statuses):
        return PlanStatus.COMPLETED
    if succeeded:
        return PlanStatus.PARTIALLY_COMPLETED
    return PlanStatus.FAILED
