from __future__ import annotations

from typing import List, Optional


class OrchestrationError(RuntimeError):
    """Base class for every failure the turn pipeline can surface."""

    phase: str = "orchestration"


class InputError(OrchestrationError):
    phase = "intent_analysis"


class PlanningError(OrchestrationError):
    phase = "planning"


class ValidationError(OrchestrationError):
    phase = "validation"

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("; ".join(self.errors) or "Plan failed validation")


class ExecutionError(OrchestrationError):
    phase = "execution"

    def __init__(self, message: str, *, step_id: Optional[str] = None) -> None:
        self.step_id = step_id
        super().__init__(message)


class SynthesisError(OrchestrationError):
    phase = "synthesis"


class PlanStateError(OrchestrationError):
    pass


class TextGenerationError(RuntimeError):
    pass
