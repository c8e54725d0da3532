from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from coreflow.context import optimal_context
from coreflow.errors import SynthesisError, TextGenerationError
from coreflow.llm_client import TextGenerator
from coreflow.models import (
    ChatMessage,
    ExecutionPlan,
    PlanStatus,
    StepStatus,
    ToolExecution,
    WorkflowResult,
)

logger = logging.getLogger(__name__)

SYNTHESIS_SYSTEM_PROMPT = (
    "You are summarizing the results of actions taken on the user's device. "
    "Explain plainly what was accomplished and what failed. "
    "Only state facts present in the step results. Be concise."
)

DIRECT_SYSTEM_PROMPT = (
    "You are a helpful on-device assistant. Answer the user directly and concisely."
)

HISTORY_ENTRY_CHARS = 500


@dataclass(frozen=True)
class SynthesisResult:
    text: str
    used_fallback: bool = False
    error: Optional[str] = None


class ResultSynthesizer:
    def __init__(
        self,
        generator: TextGenerator,
        *,
        model: str,
        temperature: float = 0.4,
        timeout_sec: float = 30.0,
        max_prompt_chars: int = 8000,
        history_limit: int = 6,
        snippet_chars: int = 200,
        max_response_tokens: int = 512,
    ) -> None:
        self.generator = generator
        self.model = model
        self.temperature = temperature
        self.timeout_sec = timeout_sec
        self.max_prompt_chars = max_prompt_chars
        self.history_limit = history_limit
        self.snippet_chars = snippet_chars
        self.max_response_tokens = max_response_tokens

    async def synthesize(
        self,
        request: str,
        plan: ExecutionPlan,
        executions: Sequence[ToolExecution],
        history: Optional[Sequence[ChatMessage]] = None,
        workflow: Optional[WorkflowResult] = None,
    ) -> SynthesisResult:
        summary = self.summarize(plan, executions, workflow)
        lines = [
            f"- {item['step_id']} {item['tool']}: {item['outcome']}"
            + (f" | {item['snippet']}" if item["snippet"] else "")
            for item in summary
        ]
        status = workflow.status.value if workflow is not None else plan.status.value
        body = (
            f"User request: {request}\n"
            f"Plan status: {status}\n"
            "Step results:\n" + "\n".join(lines) + "\n\n"
            "Write the reply to the user."
        )
        prompt = self._bounded_prompt(body, history)
        try:
            text = await self._generate(prompt, SYNTHESIS_SYSTEM_PROMPT)
        except SynthesisError as exc:
            logger.warning("[SYNTH] plan=%s falling back: %s", plan.id, exc)
            return SynthesisResult(
                text=self.fallback(plan, executions, workflow), used_fallback=True, error=str(exc)
            )
        logger.info("[SYNTH] plan=%s chars=%d", plan.id, len(text))
        return SynthesisResult(text=text)

    async def respond_directly(
        self, request: str, history: Optional[Sequence[ChatMessage]] = None
    ) -> SynthesisResult:
        prompt = self._bounded_prompt(f"User: {request}\nAssistant:", history)
        try:
            text = await self._generate(prompt, DIRECT_SYSTEM_PROMPT)
        except SynthesisError as exc:
            logger.warning("[SYNTH] direct reply falling back: %s", exc)
            return SynthesisResult(
                text="I couldn't generate a reply right now, and no device action was needed for that request.",
                used_fallback=True,
                error=str(exc),
            )
        return SynthesisResult(text=text)

    def summarize(
        self,
        plan: ExecutionPlan,
        executions: Sequence[ToolExecution],
        workflow: Optional[WorkflowResult] = None,
    ) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for ex in executions:
            out.append(
                {
                    "step_id": ex.step_id,
                    "tool": ex.tool_name,
                    "outcome": "succeeded" if ex.success else "failed",
                    "snippet": _snippet(ex.result, self.snippet_chars),
                }
            )
        if workflow is not None:
            executed = {ex.step_id for ex in executions}
            for step in plan.steps:
                status = workflow.step_statuses.get(step.id)
                if step.id in executed or status is None:
                    continue
                out.append(
                    {
                        "step_id": step.id,
                        "tool": step.tool_name,
                        "outcome": status.value,
                        "snippet": _snippet(workflow.errors.get(step.id, ""), self.snippet_chars),
                    }
                )
        return out

    def fallback(
        self,
        plan: ExecutionPlan,
        executions: Sequence[ToolExecution],
        workflow: Optional[WorkflowResult] = None,
    ) -> str:
        status = workflow.status if workflow is not None else plan.status
        if not executions:
            if status == PlanStatus.CANCELLED:
                return "The request was cancelled before any step ran."
            return "No steps were run for this request."
        if any(ex.success for ex in executions):
            lines = ["Here is what happened:"]
        else:
            lines = [
                "Unfortunately, the request could not be completed because every step failed. "
                f"The last error was: {executions[-1].result}"
            ]
        for ex in executions:
            outcome = "succeeded" if ex.success else "failed"
            lines.append(f"- {ex.tool_name} ({ex.step_id}) {outcome}: {ex.result}")
        if workflow is not None:
            for label, step_status in (("skipped", StepStatus.SKIPPED), ("cancelled", StepStatus.CANCELLED)):
                for step_id in workflow.steps_with(step_status):
                    if workflow.last_execution(step_id) is None:
                        reason = workflow.errors.get(step_id, "not run")
                        lines.append(f"- {step_id} was {label}: {reason}")
        if status == PlanStatus.CANCELLED:
            lines.append("The request was cancelled before all steps finished.")
        return "\n".join(lines)

    def _bounded_prompt(self, body: str, history: Optional[Sequence[ChatMessage]]) -> str:
        recent = list(history or [])[-self.history_limit :] if self.history_limit else []
        entries = [f"{m.role}: {m.content[:HISTORY_ENTRY_CHARS]}" for m in recent]
        while entries:
            prompt = "Recent conversation:\n" + "\n".join(entries) + "\n\n" + body
            if len(prompt) <= self.max_prompt_chars:
                return prompt
            entries.pop(0)
        return body[: self.max_prompt_chars]

    async def _generate(self, prompt: str, system: str) -> str:
        options = {
            "temperature": self.temperature,
            "num_ctx": optimal_context(system, prompt, reserve_tokens=self.max_response_tokens),
            "num_predict": self.max_response_tokens,
        }
        try:
            text = await asyncio.wait_for(
                self.generator.generate(self.model, prompt, options, system=system),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise SynthesisError(f"Generation timed out after {self.timeout_sec:g}s") from exc
        except TextGenerationError as exc:
            raise SynthesisError(str(exc)) from exc
        text = (text or "").strip()
        if not text:
            raise SynthesisError("Generation returned empty text")
        return text


def _snippet(text: str, limit: int) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
