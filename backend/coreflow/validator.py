from __future__ import annotations

import logging
from typing import List

from coreflow.errors import ValidationError
from coreflow.models import ExecutionPlan, ValidationResult
from coreflow.permissions import PermissionState
from coreflow.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class PlanValidator:
    """Structural and permission feasibility checks. Never mutates the plan."""

    def __init__(self, registry: ToolRegistry, permissions: PermissionState) -> None:
        self.registry = registry
        self.permissions = permissions

    def validate(self, plan: ExecutionPlan) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        ids = plan.step_ids()

        seen: set = set()
        for step_id in ids:
            if step_id in seen:
                errors.append(f"Duplicate step id '{step_id}'")
            seen.add(step_id)

        for step in plan.steps:
            tool = self.registry.get(step.tool_name)
            if tool is None:
                errors.append(f"Step '{step.id}' references unknown tool '{step.tool_name}'")
            for dep in step.dependencies:
                if dep == step.id:
                    errors.append(f"Step '{step.id}' depends on itself")
                elif dep not in seen:
                    errors.append(f"Step '{step.id}' depends on unknown step '{dep}'")
            if tool is None:
                continue
            for perm in tool.required_permissions:
                if self.permissions.is_granted(perm):
                    continue
                if self.permissions.is_requestable(perm):
                    warnings.append(
                        f"Step '{step.id}' needs permission '{perm}' which will be requested"
                    )
                else:
                    errors.append(
                        f"Step '{step.id}' needs permission '{perm}' which cannot be granted"
                    )
            problem = tool.validate_params(step.parameters)
            if problem:
                errors.append(f"Step '{step.id}': {problem}")

        if plan.has_cycle():
            errors.append("Plan dependency graph contains a cycle")

        result = ValidationResult(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))
        logger.info(
            "[VALIDATE] plan=%s valid=%s errors=%d warnings=%d",
            plan.id,
            result.valid,
            len(result.errors),
            len(result.warnings),
        )
        return result

    def require_valid(self, plan: ExecutionPlan) -> ValidationResult:
        result = self.validate(plan)
        if not result.valid:
            raise ValidationError(list(result.errors), list(result.warnings))
        return result
