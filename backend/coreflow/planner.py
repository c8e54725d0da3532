from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from coreflow.errors import PlanningError
from coreflow.models import ExecutionPlan, IntentAnalysis, OperationStep
from coreflow.permissions import PermissionState, missing_permissions
from coreflow.risk import assess_risk
from coreflow.tools.base import BaseTool
from coreflow.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class Planner:
    def __init__(self, registry: ToolRegistry, permissions: PermissionState) -> None:
        self.registry = registry
        self.permissions = permissions

    def plan(self, analysis: IntentAnalysis) -> ExecutionPlan:
        chosen: List[Tuple[str, BaseTool]] = []
        for tag in analysis.required_capabilities:
            tool = self._select(tag, analysis.scores)
            if tool is None:
                raise PlanningError(f"No tool provides required capability '{tag}'")
            chosen.append((tag, tool))

        for tag in analysis.optional_capabilities:
            if tag in analysis.required_capabilities:
                continue
            tool = self._select(tag, analysis.scores)
            if tool is None:
                logger.info("[PLAN] optional capability %s has no tool, dropped", tag)
                continue
            chosen.append((tag, tool))

        steps: List[OperationStep] = []
        tools_by_step: Dict[str, BaseTool] = {}
        used: set = set()
        for tag, tool in chosen:
            if tool.name in used:
                continue
            used.add(tool.name)
            step_id = f"step_{len(steps) + 1}"
            steps.append(
                OperationStep(
                    id=step_id,
                    tool_name=tool.name,
                    domain=tool.domain,
                    operation_type=tag,
                    description=tool.description,
                    parameters=tool.extract_params(analysis.request, analysis.context),
                    estimated_duration_ms=tool.estimated_duration_ms,
                    risk_level=tool.risk_level,
                    optional=tag not in analysis.required_capabilities,
                    retryable=tool.retryable,
                )
            )
            tools_by_step[step_id] = tool

        for step in steps:
            consumer = tools_by_step[step.id]
            for other in steps:
                if other.id == step.id:
                    continue
                producer = tools_by_step[other.id]
                if set(consumer.consumes) & set(producer.produces):
                    step.dependencies.append(other.id)

        plan = ExecutionPlan(intent=analysis.request, steps=steps)
        if plan.has_cycle():
            raise PlanningError("Cyclic dependency detected between planned steps")

        lacking = any(
            missing_permissions(tools_by_step[s.id].required_permissions, self.permissions)
            for s in steps
        )
        plan.risk_level = assess_risk((s.risk_level for s in steps), missing_permissions=lacking)
        plan.estimated_duration_ms = plan.critical_path_ms()
        logger.info(
            "[PLAN] plan=%s steps=%s risk=%s duration_ms=%d",
            plan.id,
            [f"{s.id}:{s.tool_name}" for s in steps],
            plan.risk_level.name,
            plan.estimated_duration_ms,
        )
        return plan

    def _select(self, capability: str, scores: Dict[str, float]) -> BaseTool | None:
        candidates = self.registry.providers(capability)
        if not candidates:
            return None

        def rank(tool: BaseTool):
            granted = not missing_permissions(tool.required_permissions, self.permissions)
            return (-scores.get(tool.name, 0.0), not granted, tool.risk_level, tool.name)

        return sorted(candidates, key=rank)[0]
