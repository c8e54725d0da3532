from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pytest
from pydantic import ConfigDict

from coreflow.errors import TextGenerationError
from coreflow.executor import WorkflowManager
from coreflow.intent import IntentAnalyzer
from coreflow.orchestrator import Orchestrator
from coreflow.permissions import StaticPermissions
from coreflow.planner import Planner
from coreflow.policy import RecoveryPolicy, RetryPolicy
from coreflow.risk import RiskLevel
from coreflow.safety import SafetyChecker
from coreflow.store import OrchestrationStore
from coreflow.synthesizer import ResultSynthesizer
from coreflow.tools.base import BaseTool, ToolInput, ToolResult
from coreflow.tools.builtin.device_tools import StaticDeviceBridge
from coreflow.tools.registry import ToolRegistry
from coreflow.validator import PlanValidator


class FakeInput(ToolInput):
    model_config = ConfigDict(extra="allow")

    value: Optional[str] = None


class FakeTool(BaseTool[FakeInput]):
    input_model = FakeInput

    def __init__(
        self,
        name: str,
        *,
        capabilities: Sequence[str] = (),
        domain: str = "test",
        risk: RiskLevel = RiskLevel.LOW,
        permissions: Sequence[str] = (),
        consumes: Sequence[str] = (),
        produces: Sequence[str] = (),
        keywords: Sequence[str] = (),
        duration_ms: int = 1000,
        outcomes: Optional[List[Any]] = None,
        delay: float = 0.0,
        retryable: bool = True,
        tracker: Optional["ConcurrencyTracker"] = None,
    ) -> None:
        self.name = name
        self.description = f"fake {name}"
        self.domain = domain
        self.risk_level = risk
        self.required_permissions = tuple(permissions)
        self.capabilities = tuple(capabilities) or (f"{name}.run",)
        self.consumes = tuple(consumes)
        self.produces = tuple(produces)
        self.keywords = tuple(keywords)
        self.estimated_duration_ms = duration_ms
        self.retryable = retryable
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.tracker = tracker
        self.calls: List[Dict[str, Any]] = []

    async def run(self, args: FakeInput, on_progress) -> ToolResult:
        self.calls.append(args.model_dump())
        if self.tracker is not None:
            self.tracker.enter()
        try:
            on_progress(f"{self.name} working")
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else True
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, ToolResult):
                return outcome
            if outcome:
                return ToolResult.ok(f"{self.name} done", value=f"{self.name}-output")
            return ToolResult.error(f"{self.name} failed")
        finally:
            if self.tracker is not None:
                self.tracker.leave()


class ConcurrencyTracker:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0

    def enter(self) -> None:
        self.active += 1
        self.peak = max(self.peak, self.active)

    def leave(self) -> None:
        self.active -= 1


class FakeGenerator:
    def __init__(self, reply: str = "All done.", *, fail: bool = False, delay: float = 0.0) -> None:
        self.reply = reply
        self.fail = fail
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, model, prompt, options=None, *, system=None) -> str:
        self.calls.append({"model": model, "prompt": prompt, "options": options, "system": system})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TextGenerationError("backend unavailable")
        return self.reply


def make_registry(tools: Iterable[BaseTool]) -> ToolRegistry:
    return ToolRegistry.from_tools(tools)


def make_orchestrator(
    registry: ToolRegistry,
    permissions: StaticPermissions,
    *,
    generator: Optional[FakeGenerator] = None,
    store: Optional[OrchestrationStore] = None,
    max_concurrency: int = 2,
) -> Orchestrator:
    generator = generator or FakeGenerator()
    recovery = RecoveryPolicy(registry, permissions, RetryPolicy(backoff_base_ms=0))
    return Orchestrator(
        analyzer=IntentAnalyzer(registry),
        planner=Planner(registry, permissions),
        validator=PlanValidator(registry, permissions),
        safety=SafetyChecker(registry, permissions),
        executor=WorkflowManager(
            registry, permissions, recovery=recovery, max_concurrency=max_concurrency
        ),
        synthesizer=ResultSynthesizer(generator, model="test-model"),
        conversations=store,
        audit=store,
    )


@pytest.fixture
def bridge() -> StaticDeviceBridge:
    return StaticDeviceBridge(
        {
            "ocr_text": {"/sdcard/DCIM/capture_0001.jpg": "OPEN 9-17"},
            "notifications": [{"app": "mail", "title": "Invoice ready"}],
        }
    )


@pytest.fixture
def store(tmp_path) -> OrchestrationStore:
    return OrchestrationStore(str(tmp_path / "coreflow-test.db"))
