from __future__ import annotations

from typing import Iterable, Optional

from coreflow.executor import WorkflowManager
from coreflow.intent import IntentAnalyzer
from coreflow.llm_client import TextGenerator, build_text_generator
from coreflow.permissions import PermissionState, StaticPermissions
from coreflow.orchestrator import Orchestrator
from coreflow.planner import Planner
from coreflow.policy import RecoveryPolicy, RetryPolicy
from coreflow.safety import SafetyChecker
from coreflow.settings import Settings, get_settings
from coreflow.store import OrchestrationStore
from coreflow.synthesizer import ResultSynthesizer
from coreflow.validator import PlanValidator
from coreflow.tools.base import BaseTool
from coreflow.tools.builtin.device_tools import (
    CameraCaptureTool,
    DeviceBridge,
    DeviceStatusTool,
    LocationLookupTool,
    NotificationListTool,
    StaticDeviceBridge,
    TextRecognitionTool,
)
from coreflow.tools.builtin.web_tools import SummarizeTool, WebFetchTool
from coreflow.tools.registry import ToolRegistry

DEFAULT_GRANTED = ("battery_stats", "camera", "internet")
DEFAULT_REQUESTABLE = ("location", "notifications")


def build_tool_registry(
    *,
    bridge: Optional[DeviceBridge] = None,
    generator: Optional[TextGenerator] = None,
    settings: Optional[Settings] = None,
    extra_tools: Iterable[BaseTool] = (),
) -> ToolRegistry:
    settings = settings or get_settings()
    bridge = bridge or StaticDeviceBridge()
    registry = ToolRegistry()
    registry.register(DeviceStatusTool(bridge))
    registry.register(CameraCaptureTool(bridge))
    registry.register(TextRecognitionTool(bridge))
    registry.register(LocationLookupTool(bridge))
    registry.register(NotificationListTool(bridge))
    registry.register(WebFetchTool())
    registry.register(SummarizeTool(generator, model=settings.synthesis_model))
    for tool in extra_tools:
        registry.register(tool)
    registry.freeze()
    return registry


def build_orchestrator(
    *,
    settings: Optional[Settings] = None,
    registry: Optional[ToolRegistry] = None,
    permissions: Optional[PermissionState] = None,
    generator: Optional[TextGenerator] = None,
    store: Optional[OrchestrationStore] = None,
) -> Orchestrator:
    settings = settings or get_settings()
    generator = generator or build_text_generator(settings)
    registry = registry or build_tool_registry(generator=generator, settings=settings)
    permissions = permissions or StaticPermissions(DEFAULT_GRANTED, DEFAULT_REQUESTABLE)
    store = store or OrchestrationStore(settings.db_path)

    recovery = RecoveryPolicy(
        registry,
        permissions,
        RetryPolicy(
            max_attempts_per_step=settings.max_step_attempts,
            backoff_base_ms=settings.retry_backoff_ms,
        ),
    )
    executor = WorkflowManager(
        registry,
        permissions,
        recovery=recovery,
        max_concurrency=settings.max_concurrent_steps,
        step_timeout_sec=settings.step_timeout_sec,
    )
    synthesizer = ResultSynthesizer(
        generator,
        model=settings.synthesis_model,
        temperature=settings.synthesis_temperature,
        timeout_sec=settings.llm_timeout_sec,
        max_prompt_chars=settings.max_prompt_chars,
        history_limit=settings.history_limit,
    )
    return Orchestrator(
        analyzer=IntentAnalyzer(registry),
        planner=Planner(registry, permissions),
        validator=PlanValidator(registry, permissions),
        safety=SafetyChecker(
            registry, permissions, confirm_threshold=settings.confirm_risk_threshold
        ),
        executor=executor,
        synthesizer=synthesizer,
        conversations=store,
        audit=store,
        history_limit=settings.history_limit,
        progress_buffer=settings.progress_buffer,
        permissions=permissions,
    )
