from __future__ import annotations

import re
from typing import Any, Callable, Dict, Generic, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from coreflow.risk import RiskLevel

ProgressCallback = Callable[[str], None]

_WORD_RE = re.compile(r"[\w']+")


class ToolInput(BaseModel):
    pass


class ToolResult(BaseModel):
    success: bool = True
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **data: Any) -> "ToolResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(success=False, message=message)


TIn = TypeVar("TIn", bound=ToolInput)


class ToolExecutionError(RuntimeError):
    pass


class BaseTool(Generic[TIn]):
    """Capability descriptor plus its streaming entry point.

    `capabilities` are the tags a planner can ask for. `consumes` and
    `produces` are data tags; a step consuming a tag depends on the step
    producing it.
    """

    name: str = ""
    description: str = ""
    domain: str = "general"
    required_permissions: Tuple[str, ...] = ()
    risk_level: RiskLevel = RiskLevel.LOW
    input_model: Type[TIn] = ToolInput
    capabilities: Tuple[str, ...] = ()
    consumes: Tuple[str, ...] = ()
    produces: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    estimated_duration_ms: int = 30000
    retryable: bool = True

    def validate_input(self, payload: Dict[str, Any]) -> TIn:
        try:
            return self.input_model.model_validate(payload)
        except PydanticValidationError as exc:
            raise ToolExecutionError(f"Invalid input for tool '{self.name}': {exc}") from exc

    def validate_params(self, params: Dict[str, Any]) -> Optional[str]:
        try:
            self.input_model.model_validate(params)
        except PydanticValidationError as exc:
            problems = ", ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'params'}: {err['msg']}"
                for err in exc.errors()
            )
            return f"Invalid parameters for '{self.name}': {problems}"
        return None

    def parameter_schema(self) -> Dict[str, Any]:
        return self.input_model.model_json_schema()

    def relevance_score(self, request: str) -> float:
        text = " ".join(_WORD_RE.findall((request or "").lower()))
        if not text:
            return 0.0
        hits = sum(1 for kw in self.keywords if re.search(rf"\b{re.escape(kw)}\b", text))
        return round(1.0 - 0.5 ** hits, 4)

    def extract_params(self, request: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def execute_streaming(
        self, params: Dict[str, Any], on_progress: ProgressCallback
    ) -> ToolResult:
        args = self.validate_input(params)
        return await self.run(args, on_progress)

    async def run(self, args: TIn, on_progress: ProgressCallback) -> ToolResult:
        raise NotImplementedError("Tool must implement run()")
