from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from coreflow.models import ExecutionPlan, Risk
from coreflow.permissions import PermissionState, missing_permissions
from coreflow.risk import RiskLevel, assess_risk
from coreflow.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ConfirmationDecision(str, Enum):
    ACCEPT = "accept"
    MODIFY = "modify"
    CANCEL = "cancel"


class ConfirmationResponse(BaseModel):
    decision: ConfirmationDecision
    keep_step_ids: Optional[List[str]] = None
    granted_permissions: List[str] = Field(default_factory=list)


class StepFlag(BaseModel):
    step_id: str
    tool_name: str
    intrinsic_risk: Risk
    effective_risk: Risk
    missing_permissions: List[str] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)


class SecurityReport(BaseModel):
    plan_id: str
    aggregate_risk: Risk
    threshold: Risk
    requires_confirmation: bool
    flagged_steps: List[StepFlag] = Field(default_factory=list)
    requestable_permissions: List[str] = Field(default_factory=list)


class PlanPreviewStep(BaseModel):
    id: str
    domain: str
    description: str
    estimated_duration_ms: int
    risk_level: Risk
    dependencies: List[str] = Field(default_factory=list)


class PlanPreview(BaseModel):
    plan_id: str
    intent: str
    steps: List[PlanPreviewStep]
    aggregate_risk: Risk
    estimated_duration_ms: int
    warnings: List[str] = Field(default_factory=list)
    options: List[ConfirmationDecision] = Field(default_factory=lambda: list(ConfirmationDecision))


class SafetyChecker:
    """Deterministic risk gate between validation and execution."""

    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionState,
        *,
        confirm_threshold: RiskLevel = RiskLevel.HIGH,
    ) -> None:
        self.registry = registry
        self.permissions = permissions
        self.confirm_threshold = confirm_threshold

    def assess(self, plan: ExecutionPlan) -> SecurityReport:
        flags: List[StepFlag] = []
        lacking = False
        requestable: List[str] = []
        for step in plan.steps:
            tool = self.registry.get(step.tool_name)
            required = tool.required_permissions if tool is not None else ()
            missing = missing_permissions(required, self.permissions)
            lacking = lacking or bool(missing)
            for p in missing:
                if self.permissions.is_requestable(p) and p not in requestable:
                    requestable.append(p)
            effective = step.risk_level.escalate(len(missing))
            reasons: List[str] = [f"Permission '{p}' is not granted" for p in missing]
            if step.risk_level >= self.confirm_threshold:
                reasons.append(f"{tool.name if tool else step.tool_name} is rated {step.risk_level.name}")
            if reasons:
                flags.append(
                    StepFlag(
                        step_id=step.id,
                        tool_name=step.tool_name,
                        intrinsic_risk=step.risk_level,
                        effective_risk=effective,
                        missing_permissions=missing,
                        reasons=reasons,
                    )
                )

        aggregate = assess_risk((s.risk_level for s in plan.steps), missing_permissions=lacking)
        plan.risk_level = aggregate
        report = SecurityReport(
            plan_id=plan.id,
            aggregate_risk=aggregate,
            threshold=self.confirm_threshold,
            requires_confirmation=bool(plan.steps) and aggregate >= self.confirm_threshold,
            flagged_steps=flags,
            requestable_permissions=requestable,
        )
        logger.info(
            "[SAFETY] plan=%s risk=%s confirm=%s flagged=%s",
            plan.id,
            aggregate.name,
            report.requires_confirmation,
            [f.step_id for f in flags],
        )
        return report

    def build_preview(self, plan: ExecutionPlan, report: SecurityReport) -> PlanPreview:
        warnings = [reason for flag in report.flagged_steps for reason in flag.reasons]
        return PlanPreview(
            plan_id=plan.id,
            intent=plan.intent,
            steps=[
                PlanPreviewStep(
                    id=s.id,
                    domain=s.domain,
                    description=s.description,
                    estimated_duration_ms=s.estimated_duration_ms,
                    risk_level=s.risk_level,
                    dependencies=list(s.dependencies),
                )
                for s in plan.steps
            ],
            aggregate_risk=report.aggregate_risk,
            estimated_duration_ms=plan.estimated_duration_ms,
            warnings=warnings,
        )
