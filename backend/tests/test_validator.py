from __future__ import annotations

import pytest

from conftest import FakeTool, make_registry
from coreflow.bootstrap import build_tool_registry
from coreflow.errors import ValidationError
from coreflow.models import ExecutionPlan, OperationStep
from coreflow.permissions import StaticPermissions
from coreflow.validator import PlanValidator


def _step(step_id, tool, deps=(), params=None) -> OperationStep:
    return OperationStep(
        id=step_id,
        tool_name=tool,
        domain="test",
        operation_type="op",
        description=step_id,
        parameters=params or {},
        dependencies=list(deps),
    )


@pytest.fixture
def registry():
    return make_registry(
        [
            FakeTool("plain"),
            FakeTool("gps", permissions=("location",)),
            FakeTool("contacts", permissions=("contacts",)),
        ]
    )


def test_valid_plan_passes(registry) -> None:
    plan = ExecutionPlan(intent="x", steps=[_step("s1", "plain"), _step("s2", "plain", ["s1"])])
    result = PlanValidator(registry, StaticPermissions()).validate(plan)
    assert result.valid
    assert result.errors == ()


def test_unknown_tool_and_dependency_are_errors(registry) -> None:
    plan = ExecutionPlan(intent="x", steps=[_step("s1", "nope"), _step("s2", "plain", ["s9"])])
    result = PlanValidator(registry, StaticPermissions()).validate(plan)
    assert not result.valid
    assert any("unknown tool 'nope'" in e for e in result.errors)
    assert any("unknown step 's9'" in e for e in result.errors)


def test_cycle_is_an_error(registry) -> None:
    plan = ExecutionPlan(
        intent="x",
        steps=[_step("s1", "plain", ["s2"]), _step("s2", "plain", ["s1"])],
    )
    result = PlanValidator(registry, StaticPermissions()).validate(plan)
    assert not result.valid
    assert any("cycle" in e for e in result.errors)


def test_requestable_permission_warns_and_ungrantable_errors(registry) -> None:
    perms = StaticPermissions(requestable=["location"])
    plan = ExecutionPlan(intent="x", steps=[_step("s1", "gps"), _step("s2", "contacts")])
    result = PlanValidator(registry, perms).validate(plan)
    assert not result.valid
    assert len(result.warnings) == 1 and "location" in result.warnings[0]
    assert len(result.errors) == 1 and "contacts" in result.errors[0]


def test_parameter_validation_uses_tool_schema(bridge) -> None:
    tools = build_tool_registry(bridge=bridge)
    perms = StaticPermissions(granted=["internet"])
    plan = ExecutionPlan(intent="x", steps=[_step("s1", "web_fetch", params={"url": "ftp://nope"})])
    result = PlanValidator(tools, perms).validate(plan)
    assert not result.valid
    assert "web_fetch" in result.errors[0]


def test_validation_is_idempotent(registry) -> None:
    perms = StaticPermissions(requestable=["location"])
    plan = ExecutionPlan(
        intent="x",
        steps=[_step("s1", "gps"), _step("s2", "nope", ["s1"]), _step("s3", "plain", ["s4"])],
    )
    validator = PlanValidator(registry, perms)
    before = plan.model_dump()
    first = validator.validate(plan)
    second = validator.validate(plan)
    assert first == second
    assert plan.model_dump() == before


def test_require_valid_raises_with_error_list(registry) -> None:
    plan = ExecutionPlan(intent="x", steps=[_step("s1", "nope")])
    with pytest.raises(ValidationError) as info:
        PlanValidator(registry, StaticPermissions()).require_valid(plan)
    assert info.value.errors and "nope" in info.value.errors[0]
