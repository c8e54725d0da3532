from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence

from coreflow.models import OperationStep
from coreflow.permissions import PermissionState
from coreflow.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class RecoveryAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    SUBSTITUTE = "substitute"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts_per_step: int = 2
    max_total_retries: int = 6
    backoff_base_ms: int = 150

    def backoff_ms(self, attempt: int) -> int:
        return self.backoff_base_ms * max(attempt, 1)


@dataclass(frozen=True)
class RecoveryDecision:
    action: RecoveryAction
    reason: str
    substitute_tool: Optional[str] = None
    delay_ms: int = 0


@dataclass
class RetryState:
    total_retries: int = 0
    per_step: Dict[str, int] = field(default_factory=dict)

    def can_retry(self, step_id: str, policy: RetryPolicy) -> bool:
        if self.total_retries >= policy.max_total_retries:
            return False
        return self.per_step.get(step_id, 1) < policy.max_attempts_per_step

    def mark_retry(self, step_id: str) -> int:
        self.total_retries += 1
        self.per_step[step_id] = self.per_step.get(step_id, 1) + 1
        return self.per_step[step_id]


class RecoveryPolicy:
    """Retry, then substitute, then skip optional steps, else abort."""

    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionState,
        retry: RetryPolicy = RetryPolicy(),
    ) -> None:
        self.registry = registry
        self.permissions = permissions
        self.retry = retry

    def handle_failure(
        self,
        step: OperationStep,
        error: str,
        *,
        state: RetryState,
        current_tool: str,
        tried_tools: Sequence[str],
        retryable: bool = True,
    ) -> RecoveryDecision:
        tool = self.registry.get(current_tool)
        if retryable and step.retryable and tool is not None and tool.retryable:
            if state.can_retry(step.id, self.retry):
                attempt = state.per_step.get(step.id, 1)
                return RecoveryDecision(
                    action=RecoveryAction.RETRY,
                    reason=f"retrying after: {error}",
                    delay_ms=self.retry.backoff_ms(attempt),
                )

        alternates = self.registry.alternatives(
            step.operation_type, exclude=tried_tools, permissions=self.permissions
        )
        if alternates:
            return RecoveryDecision(
                action=RecoveryAction.SUBSTITUTE,
                reason=f"substituting {alternates[0].name} for {current_tool}",
                substitute_tool=alternates[0].name,
            )

        if step.optional:
            return RecoveryDecision(action=RecoveryAction.SKIP, reason=f"optional step failed: {error}")

        return RecoveryDecision(action=RecoveryAction.ABORT, reason=error)
