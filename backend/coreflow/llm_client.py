from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from coreflow.errors import TextGenerationError
from coreflow.settings import Settings

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        system: Optional[str] = None,
    ) -> str: ...


class OllamaTextGenerator:
    """Non-streaming `/api/generate` client for an Ollama-compatible server."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.transport = transport

    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        system: Optional[str] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": dict(options or {}),
        }
        if system:
            payload["system"] = system

        try:
            async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self.transport) as client:
                res = await client.post(f"{self.base_url}/api/generate", json=payload)
        except httpx.HTTPError as exc:
            raise TextGenerationError(f"Generation request failed: {exc}") from exc

        if res.status_code >= 400:
            raise TextGenerationError(f"Generation upstream error: {res.status_code} {res.text[:300]}")
        try:
            data = res.json()
        except ValueError as exc:
            raise TextGenerationError("Generation upstream returned invalid JSON") from exc
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise TextGenerationError("Generation upstream returned unexpected response format")
        return text


class OpenAITextGenerator:
    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        timeout_sec: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_sec)

    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        system: Optional[str] = None,
    ) -> str:
        opts = dict(options or {})
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        kwargs: Dict[str, Any] = {}
        if "temperature" in opts:
            kwargs["temperature"] = opts["temperature"]
        if "num_predict" in opts:
            kwargs["max_tokens"] = opts["num_predict"]
        try:
            response = await self.client.chat.completions.create(
                model=model, messages=messages, **kwargs
            )
        except OpenAIError as exc:
            raise TextGenerationError(f"Generation request failed: {exc}") from exc
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError) as exc:
            raise TextGenerationError("Generation upstream returned unexpected response format") from exc


class DisabledTextGenerator:
    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        system: Optional[str] = None,
    ) -> str:
        raise TextGenerationError("Text generation is disabled")


def build_text_generator(settings: Settings) -> TextGenerator:
    backend = settings.llm_backend
    if backend == "ollama":
        return OllamaTextGenerator(settings.llm_base_url, timeout_sec=settings.llm_timeout_sec)
    if backend == "openai":
        if not settings.llm_api_key:
            logger.warning("OpenAI backend selected without COREFLOW_LLM_API_KEY; generation disabled")
            return DisabledTextGenerator()
        return OpenAITextGenerator(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            timeout_sec=settings.llm_timeout_sec,
        )
    if backend != "off":
        logger.warning("Unknown LLM backend '%s'; generation disabled", backend)
    return DisabledTextGenerator()
