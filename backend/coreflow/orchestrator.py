from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel

from coreflow.errors import OrchestrationError, PlanStateError
from coreflow.events import (
    ConfirmationUpdate,
    ExecutionUpdate,
    FailureUpdate,
    IntentAnalysisUpdate,
    PlanningUpdate,
    SynthesisUpdate,
)
from coreflow.executor import ProgressTarget, WorkflowManager
from coreflow.intent import IntentAnalyzer
from coreflow.models import (
    ChatMessage,
    ExecutionPlan,
    IntentAnalysis,
    PlanStatus,
    StepStatus,
    ValidationResult,
    WorkflowResult,
)
from coreflow.permissions import PermissionState
from coreflow.planner import Planner
from coreflow.progress import CancellationToken, ProgressStream
from coreflow.safety import (
    ConfirmationDecision,
    ConfirmationResponse,
    PlanPreview,
    SafetyChecker,
    SecurityReport,
)
from coreflow.synthesizer import ResultSynthesizer
from coreflow.validator import PlanValidator

logger = logging.getLogger(__name__)

ConfirmationHandler = Callable[[PlanPreview, SecurityReport], Awaitable[ConfirmationResponse]]

CANCELLED_REPLY = "Okay, I cancelled that. Nothing was run."


class ConversationLog(Protocol):
    def recent_messages(self, conversation_id: str, limit: int = 6) -> List[ChatMessage]: ...

    def append_message(self, conversation_id: str, role: str, content: str) -> Any: ...


class AuditSink(Protocol):
    def append_event(self, turn_id: str, update: Any) -> Any: ...


@dataclass
class PreparedTurn:
    turn_id: str
    conversation_id: str
    request: str
    analysis: IntentAnalysis
    plan: ExecutionPlan
    validation: ValidationResult
    report: SecurityReport
    preview: PlanPreview
    history: List[ChatMessage] = field(default_factory=list)
    modified: bool = False
    rounds: int = 0

    @property
    def requires_confirmation(self) -> bool:
        return self.report.requires_confirmation


class TurnResult(BaseModel):
    turn_id: str
    response: str
    status: PlanStatus
    plan: ExecutionPlan
    workflow: Optional[WorkflowResult] = None
    report: Optional[SecurityReport] = None
    used_fallback: bool = False


@dataclass
class TurnHandle:
    task: "asyncio.Task[TurnResult]"
    progress: ProgressStream
    cancel_token: CancellationToken

    def cancel(self, reason: str = "cancelled by user") -> None:
        self.cancel_token.cancel(reason)

    async def result(self) -> TurnResult:
        return await self.task


class Orchestrator:
    """Coordinates one user turn across the planning and execution phases."""

    def __init__(
        self,
        *,
        analyzer: IntentAnalyzer,
        planner: Planner,
        validator: PlanValidator,
        safety: SafetyChecker,
        executor: WorkflowManager,
        synthesizer: ResultSynthesizer,
        conversations: Optional[ConversationLog] = None,
        audit: Optional[AuditSink] = None,
        history_limit: int = 6,
        max_confirmation_rounds: int = 3,
        permissions: Optional[PermissionState] = None,
        progress_buffer: int = 256,
    ) -> None:
        self.analyzer = analyzer
        self.planner = planner
        self.validator = validator
        self.safety = safety
        self.executor = executor
        self.synthesizer = synthesizer
        self.conversations = conversations
        self.audit = audit
        self.history_limit = history_limit
        self.max_confirmation_rounds = max(1, max_confirmation_rounds)
        self.progress_buffer = progress_buffer
        self.permissions = permissions if permissions is not None else safety.permissions

    def prepare(
        self,
        request: str,
        *,
        conversation_id: str = "default",
        device_context: Optional[Dict[str, Any]] = None,
    ) -> PreparedTurn:
        turn_id = uuid.uuid4().hex
        history = self._history(conversation_id)
        stage = "intent_analysis"
        try:
            analysis = self.analyzer.analyze(request, device_context, history)
            self._record(turn_id, IntentAnalysisUpdate(analysis=analysis))
            stage = "planning"
            plan = self.planner.plan(analysis)
            stage = "validation"
            validation = self.validator.require_valid(plan)
        except OrchestrationError as exc:
            logger.warning("[TURN] turn=%s failed at %s: %s", turn_id, stage, exc)
            self._record(
                turn_id,
                FailureUpdate(stage=stage, error_type=type(exc).__name__, message=str(exc)),
            )
            raise

        self._record(turn_id, PlanningUpdate(plan=plan, warnings=list(validation.warnings)))
        report = self.safety.assess(plan)
        prepared = PreparedTurn(
            turn_id=turn_id,
            conversation_id=conversation_id,
            request=analysis.request,
            analysis=analysis,
            plan=plan,
            validation=validation,
            report=report,
            preview=self.safety.build_preview(plan, report),
            history=history,
        )
        logger.info(
            "[TURN] turn=%s plan=%s steps=%d confirm=%s",
            turn_id,
            plan.id,
            len(plan.steps),
            prepared.requires_confirmation,
        )
        return prepared

    def apply_modification(self, prepared: PreparedTurn, keep_step_ids: List[str]) -> PreparedTurn:
        keep = set(keep_step_ids)
        removed = [s.id for s in prepared.plan.steps if s.id not in keep]
        plan = prepared.plan.without_steps(removed)
        validation = self.validator.require_valid(plan)
        report = self.safety.assess(plan)
        self._record(prepared.turn_id, PlanningUpdate(plan=plan, warnings=list(validation.warnings)))
        logger.info(
            "[TURN] turn=%s modified plan=%s kept=%s",
            prepared.turn_id,
            plan.id,
            plan.step_ids(),
        )
        return PreparedTurn(
            turn_id=prepared.turn_id,
            conversation_id=prepared.conversation_id,
            request=prepared.request,
            analysis=prepared.analysis,
            plan=plan,
            validation=validation,
            report=report,
            preview=self.safety.build_preview(plan, report),
            history=prepared.history,
            modified=True,
            rounds=prepared.rounds + 1,
        )

    async def execute_prepared(
        self,
        prepared: PreparedTurn,
        decision: Optional[ConfirmationResponse] = None,
        *,
        progress: ProgressTarget = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TurnResult:
        plan = prepared.plan
        if plan.status != PlanStatus.DRAFT:
            raise PlanStateError(f"Plan {plan.id} was already {plan.status.value}")

        if prepared.requires_confirmation or decision is not None:
            choice = decision.decision if decision is not None else None
            granted = list(decision.granted_permissions) if decision is not None else []
            self._record(
                prepared.turn_id,
                ConfirmationUpdate(
                    plan_id=plan.id,
                    aggregate_risk=prepared.report.aggregate_risk,
                    required=prepared.requires_confirmation,
                    decision=choice.value if choice is not None else None,
                    granted_permissions=granted,
                ),
            )
            if prepared.requires_confirmation and choice is None:
                raise PlanStateError(f"Plan {plan.id} requires confirmation before it can run")
            if choice == ConfirmationDecision.MODIFY:
                raise PlanStateError("Apply the modification and confirm the revised plan")
            if choice == ConfirmationDecision.CANCEL:
                return self._cancelled(prepared)
            if choice == ConfirmationDecision.ACCEPT and granted:
                self._grant(prepared, granted)

        if plan.is_direct_response:
            if prepared.modified:
                return self._cancelled(prepared)
            return await self._direct(prepared)

        plan.transition_to(PlanStatus.APPROVED)

        def _on_execution(execution) -> None:
            self._record(prepared.turn_id, ExecutionUpdate(execution=execution))

        workflow = await self.executor.execute(
            plan, progress, cancel_token=cancel_token, on_execution=_on_execution
        )
        synthesis = await self.synthesizer.synthesize(
            prepared.request, plan, workflow.executions, prepared.history, workflow
        )
        self._record(
            prepared.turn_id,
            SynthesisUpdate(
                response=synthesis.text,
                status=workflow.status.value,
                used_fallback=synthesis.used_fallback,
            ),
        )
        self._remember(prepared, synthesis.text)
        return TurnResult(
            turn_id=prepared.turn_id,
            response=synthesis.text,
            status=workflow.status,
            plan=plan,
            workflow=workflow,
            report=prepared.report,
            used_fallback=synthesis.used_fallback,
        )

    async def run_turn(
        self,
        request: str,
        *,
        conversation_id: str = "default",
        device_context: Optional[Dict[str, Any]] = None,
        confirm: Optional[ConfirmationHandler] = None,
        progress: ProgressTarget = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TurnResult:
        prepared = self.prepare(
            request, conversation_id=conversation_id, device_context=device_context
        )
        decision: Optional[ConfirmationResponse] = None
        while prepared.requires_confirmation:
            if confirm is None:
                logger.info("[TURN] turn=%s needs confirmation but no handler; cancelling", prepared.turn_id)
                decision = ConfirmationResponse(decision=ConfirmationDecision.CANCEL)
                break
            decision = await confirm(prepared.preview, prepared.report)
            if decision.decision != ConfirmationDecision.MODIFY:
                break
            if not self.can_modify(prepared):
                decision = ConfirmationResponse(decision=ConfirmationDecision.CANCEL)
                break
            prepared = self.apply_modification(prepared, decision.keep_step_ids or [])
            decision = None
            if prepared.plan.is_direct_response:
                return self._cancelled(prepared)

        return await self.execute_prepared(
            prepared, decision, progress=progress, cancel_token=cancel_token
        )

    def can_modify(self, prepared: PreparedTurn) -> bool:
        """Whether another modify round fits under `max_confirmation_rounds`."""
        return prepared.rounds + 1 < self.max_confirmation_rounds

    def start_turn(
        self,
        request: str,
        *,
        conversation_id: str = "default",
        device_context: Optional[Dict[str, Any]] = None,
        confirm: Optional[ConfirmationHandler] = None,
    ) -> TurnHandle:
        stream = ProgressStream(self.progress_buffer)
        token = CancellationToken()
        task = asyncio.create_task(
            self.run_turn(
                request,
                conversation_id=conversation_id,
                device_context=device_context,
                confirm=confirm,
                progress=stream,
                cancel_token=token,
            )
        )
        task.add_done_callback(lambda _: stream.close())
        return TurnHandle(task=task, progress=stream, cancel_token=token)

    async def _direct(self, prepared: PreparedTurn) -> TurnResult:
        plan = prepared.plan
        plan.transition_to(PlanStatus.APPROVED)
        plan.transition_to(PlanStatus.EXECUTING)
        synthesis = await self.synthesizer.respond_directly(prepared.request, prepared.history)
        plan.transition_to(PlanStatus.COMPLETED)
        self._record(
            prepared.turn_id,
            SynthesisUpdate(
                response=synthesis.text,
                status=plan.status.value,
                used_fallback=synthesis.used_fallback,
            ),
        )
        self._remember(prepared, synthesis.text)
        return TurnResult(
            turn_id=prepared.turn_id,
            response=synthesis.text,
            status=plan.status,
            plan=plan,
            report=prepared.report,
            used_fallback=synthesis.used_fallback,
        )

    def _grant(self, prepared: PreparedTurn, names: List[str]) -> None:
        allowed = set(prepared.report.requestable_permissions)
        refused = sorted(n for n in set(names) if n not in allowed and not self.permissions.is_granted(n))
        if refused:
            raise PlanStateError(
                f"Plan {prepared.plan.id} cannot grant {', '.join(refused)}; only requestable permissions may be granted"
            )
        for name in names:
            self.permissions.grant(name)
        logger.info("[TURN] turn=%s granted %s", prepared.turn_id, sorted(set(names)))

    def _cancelled(self, prepared: PreparedTurn) -> TurnResult:
        plan = prepared.plan
        if not plan.is_terminal:
            plan.transition_to(PlanStatus.CANCELLED)
        workflow = WorkflowResult(
            plan_id=plan.id,
            status=PlanStatus.CANCELLED,
            step_statuses={s.id: StepStatus.CANCELLED for s in plan.steps},
        )
        self._record(
            prepared.turn_id,
            SynthesisUpdate(response=CANCELLED_REPLY, status=PlanStatus.CANCELLED.value),
        )
        self._remember(prepared, CANCELLED_REPLY)
        logger.info("[TURN] turn=%s plan=%s cancelled at confirmation", prepared.turn_id, plan.id)
        return TurnResult(
            turn_id=prepared.turn_id,
            response=CANCELLED_REPLY,
            status=PlanStatus.CANCELLED,
            plan=plan,
            workflow=workflow,
            report=prepared.report,
        )

    def _history(self, conversation_id: str) -> List[ChatMessage]:
        if self.conversations is None:
            return []
        return self.conversations.recent_messages(conversation_id, self.history_limit)

    def _remember(self, prepared: PreparedTurn, response: str) -> None:
        if self.conversations is None:
            return
        self.conversations.append_message(prepared.conversation_id, "user", prepared.request)
        self.conversations.append_message(prepared.conversation_id, "assistant", response)

    def _record(self, turn_id: str, update: Any) -> None:
        if self.audit is None:
            return
        try:
            self.audit.append_event(turn_id, update)
        except Exception:  # noqa: BLE001
            logger.exception("[TURN] turn=%s failed to write %s audit event", turn_id, update.phase)
