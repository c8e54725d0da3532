from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer, model_validator

from coreflow.errors import PlanStateError
from coreflow.risk import RiskLevel

DEFAULT_STEP_DURATION_MS = 30000


def _coerce_risk(value: Any) -> Any:
    if isinstance(value, str) and not value.isdigit():
        return RiskLevel.parse(value)
    return value


Risk = Annotated[
    RiskLevel,
    BeforeValidator(_coerce_risk),
    PlainSerializer(lambda r: r.name, return_type=str, when_used="json"),
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PlanStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PLAN_STATUSES = {
    PlanStatus.COMPLETED,
    PlanStatus.PARTIALLY_COMPLETED,
    PlanStatus.FAILED,
    PlanStatus.CANCELLED,
}

_PLAN_TRANSITIONS: Dict[PlanStatus, Set[PlanStatus]] = {
    PlanStatus.DRAFT: {PlanStatus.APPROVED, PlanStatus.CANCELLED},
    PlanStatus.APPROVED: {PlanStatus.EXECUTING, PlanStatus.CANCELLED},
    PlanStatus.EXECUTING: {
        PlanStatus.COMPLETED,
        PlanStatus.PARTIALLY_COMPLETED,
        PlanStatus.FAILED,
        PlanStatus.CANCELLED,
    },
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class IntentAnalysis(BaseModel):
    request: str
    domains: List[str] = Field(default_factory=list)
    required_capabilities: List[str] = Field(default_factory=list)
    optional_capabilities: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    scores: Dict[str, float] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    resolved_from_history: bool = False

    @property
    def capabilities(self) -> List[str]:
        return self.required_capabilities + [
            c for c in self.optional_capabilities if c not in self.required_capabilities
        ]


class OperationStep(BaseModel):
    id: str
    tool_name: str
    domain: str
    operation_type: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    estimated_duration_ms: int = Field(default=DEFAULT_STEP_DURATION_MS, ge=0)
    risk_level: Risk = RiskLevel.LOW
    optional: bool = False
    retryable: bool = True


class ExecutionPlan(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    intent: str
    steps: List[OperationStep] = Field(default_factory=list)
    risk_level: Risk = RiskLevel.LOW
    estimated_duration_ms: int = 0
    status: PlanStatus = PlanStatus.DRAFT
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_direct_response(self) -> bool:
        return not self.steps

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    def step(self, step_id: str) -> Optional[OperationStep]:
        for s in self.steps:
            if s.id == step_id:
                return s
        return None

    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    def dependents(self, step_id: str) -> List[OperationStep]:
        return [s for s in self.steps if step_id in s.dependencies]

    def transitive_dependents(self, step_id: str) -> Set[str]:
        seen: Set[str] = set()
        frontier = [step_id]
        while frontier:
            current = frontier.pop()
            for s in self.dependents(current):
                if s.id not in seen:
                    seen.add(s.id)
                    frontier.append(s.id)
        return seen

    def topological_order(self) -> Optional[List[str]]:
        """Kahn's algorithm over known steps; None when the graph has a cycle."""
        known = set(self.step_ids())
        indegree = {s.id: len([d for d in s.dependencies if d in known]) for s in self.steps}
        ready = [s.id for s in self.steps if indegree[s.id] == 0]
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for s in self.dependents(current):
                indegree[s.id] -= 1
                if indegree[s.id] == 0:
                    ready.append(s.id)
        if len(order) != len(self.steps):
            return None
        return order

    def has_cycle(self) -> bool:
        return self.topological_order() is None

    def critical_path_ms(self) -> int:
        order = self.topological_order()
        if order is None:
            return sum(s.estimated_duration_ms for s in self.steps)
        finish: Dict[str, int] = {}
        for step_id in order:
            s = self.step(step_id)
            start = max((finish[d] for d in s.dependencies if d in finish), default=0)
            finish[step_id] = start + s.estimated_duration_ms
        return max(finish.values(), default=0)

    def transition_to(self, status: PlanStatus) -> None:
        if status == self.status:
            return
        allowed = _PLAN_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise PlanStateError(
                f"Illegal plan transition {self.status.value} -> {status.value}"
            )
        self.status = status

    def without_steps(self, removed: Iterable[str]) -> "ExecutionPlan":
        drop: Set[str] = set()
        for step_id in removed:
            if self.step(step_id) is not None:
                drop.add(step_id)
                drop.update(self.transitive_dependents(step_id))
        kept = [s.model_copy(deep=True) for s in self.steps if s.id not in drop]
        plan = ExecutionPlan(intent=self.intent, steps=kept, risk_level=self.risk_level)
        plan.estimated_duration_ms = plan.critical_path_ms()
        return plan


class ToolExecution(BaseModel):
    step_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: str = ""
    started_at: datetime
    ended_at: datetime
    success: bool
    reasoning: Optional[str] = None
    attempt: int = 1

    @model_validator(mode="after")
    def _check_times(self) -> "ToolExecution":
        if self.ended_at < self.started_at:
            raise ValueError("ended_at must not precede started_at")
        return self

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


class WorkflowResult(BaseModel):
    plan_id: str
    status: PlanStatus
    executions: List[ToolExecution] = Field(default_factory=list)
    step_statuses: Dict[str, StepStatus] = Field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)

    def steps_with(self, status: StepStatus) -> List[str]:
        return [k for k, v in self.step_statuses.items() if v == status]

    def last_execution(self, step_id: str) -> Optional[ToolExecution]:
        found = [e for e in self.executions if e.step_id == step_id]
        return found[-1] if found else None


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


class ChatMessage(BaseModel):
    role: str
    content: str
    created_at: Optional[datetime] = None
