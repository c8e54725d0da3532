from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from coreflow.models import ExecutionPlan, IntentAnalysis, Risk, ToolExecution


class IntentAnalysisUpdate(BaseModel):
    phase: Literal["intent_analysis"] = "intent_analysis"
    analysis: IntentAnalysis


class PlanningUpdate(BaseModel):
    phase: Literal["planning"] = "planning"
    plan: ExecutionPlan
    warnings: List[str] = Field(default_factory=list)


class ConfirmationUpdate(BaseModel):
    phase: Literal["confirmation"] = "confirmation"
    plan_id: str
    aggregate_risk: Risk
    required: bool
    decision: Optional[str] = None
    granted_permissions: List[str] = Field(default_factory=list)


class ExecutionUpdate(BaseModel):
    phase: Literal["execution"] = "execution"
    execution: ToolExecution


class SynthesisUpdate(BaseModel):
    phase: Literal["synthesis"] = "synthesis"
    response: str
    status: str
    used_fallback: bool = False


class FailureUpdate(BaseModel):
    phase: Literal["failure"] = "failure"
    stage: str
    error_type: str
    message: str


PhaseUpdate = Annotated[
    Union[
        IntentAnalysisUpdate,
        PlanningUpdate,
        ConfirmationUpdate,
        ExecutionUpdate,
        SynthesisUpdate,
        FailureUpdate,
    ],
    Field(discriminator="phase"),
]

phase_update_adapter: TypeAdapter = TypeAdapter(PhaseUpdate)
