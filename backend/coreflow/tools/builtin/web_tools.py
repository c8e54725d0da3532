from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import httpx
import trafilatura
from pydantic import Field

from coreflow.errors import TextGenerationError
from coreflow.llm_client import TextGenerator
from coreflow.risk import RiskLevel
from coreflow.tools.base import (
    BaseTool,
    ProgressCallback,
    ToolExecutionError,
    ToolInput,
    ToolResult,
)

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://[^\s<>\"')]+")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def html_to_text(markup: str) -> str:
    """Readable text of an HTML page, or an empty string when nothing is extractable."""
    extracted = trafilatura.extract(
        markup,
        include_comments=False,
        include_tables=False,
        include_images=False,
        include_links=False,
        output_format="txt",
    ) or ""
    return " ".join(extracted.split())


class WebFetchInput(ToolInput):
    url: str = Field(pattern=r"^https?://")
    max_chars: int = Field(default=20000, ge=100, le=200000)


class WebFetchTool(BaseTool[WebFetchInput]):
    name = "web_fetch"
    description = "Downloads a web page and extracts its readable text."
    domain = "web"
    required_permissions = ("internet",)
    risk_level = RiskLevel.MEDIUM
    input_model = WebFetchInput
    capabilities = ("web.fetch",)
    produces = ("html", "text")
    keywords = ("http", "https", "url", "website", "page", "fetch")
    estimated_duration_ms = 8000

    def __init__(
        self,
        *,
        timeout_sec: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_sec = timeout_sec
        self.transport = transport

    def extract_params(self, request: str, context: Dict[str, Any]) -> Dict[str, Any]:
        match = _URL_RE.search(request)
        if match is None:
            return {}
        return {"url": match.group(0).rstrip(".,;")}

    async def run(self, args: WebFetchInput, on_progress: ProgressCallback) -> ToolResult:
        on_progress(f"Fetching {args.url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_sec, transport=self.transport, follow_redirects=True
            ) as client:
                res = await client.get(args.url)
        except httpx.HTTPError as exc:
            return ToolResult.error(f"Fetch failed: {exc}")
        if res.status_code >= 400:
            return ToolResult.error(f"Fetch failed: HTTP {res.status_code}")

        markup = res.text
        text = html_to_text(markup)[: args.max_chars]
        if not text:
            raise ToolExecutionError(f"No readable text found at {args.url}")
        on_progress(f"Extracted {len(text)} characters")
        return ToolResult.ok(
            f"Fetched {args.url} ({len(text)} chars)",
            url=str(res.url),
            html=markup[: args.max_chars],
            text=text,
        )


class SummarizeInput(ToolInput):
    text: Optional[str] = None
    max_sentences: int = Field(default=3, ge=1, le=10)


class SummarizeTool(BaseTool[SummarizeInput]):
    name = "summarize"
    description = "Summarizes text."
    domain = "language"
    risk_level = RiskLevel.LOW
    input_model = SummarizeInput
    capabilities = ("text.summarize",)
    consumes = ("text",)
    keywords = ("summarize", "summarise", "summary", "tldr", "condense")
    estimated_duration_ms = 6000

    def __init__(self, generator: Optional[TextGenerator] = None, *, model: str = "") -> None:
        self.generator = generator
        self.model = model

    def extract_params(self, request: str, context: Dict[str, Any]) -> Dict[str, Any]:
        head, sep, tail = request.partition(":")
        if sep and re.search(r"summari[sz]e|summary", head.lower()) and tail.strip():
            return {"text": tail.strip()}
        return {}

    async def run(self, args: SummarizeInput, on_progress: ProgressCallback) -> ToolResult:
        if not args.text or not args.text.strip():
            raise ToolExecutionError("Nothing to summarize")
        if self.generator is not None and self.model:
            on_progress("Summarizing with language model")
            try:
                summary = await self.generator.generate(
                    self.model,
                    f"Summarize in at most {args.max_sentences} sentences:\n\n{args.text[:12000]}",
                    {"temperature": 0.2, "num_predict": 256},
                )
                if summary.strip():
                    return ToolResult.ok(summary.strip(), summary=summary.strip())
            except TextGenerationError as exc:
                logger.warning("Summarizer generation failed, using extractive summary: %s", exc)
        summary = extractive_summary(args.text, args.max_sentences)
        return ToolResult.ok(summary, summary=summary)


def extractive_summary(text: str, max_sentences: int) -> str:
    sentences: List[str] = [s.strip() for s in _SENTENCE_RE.split(" ".join(text.split())) if s.strip()]
    return " ".join(sentences[:max_sentences])
