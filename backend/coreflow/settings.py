from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from coreflow.risk import RiskLevel

ENV_PREFIX = "COREFLOW_"
DB_FILENAME = "coreflow.db"

_DEFAULT_BASE_URLS = {
    "ollama": "http://127.0.0.1:11434",
    "openai": "https://api.openai.com/v1",
}


@dataclass(frozen=True)
class Settings:
    llm_backend: str
    llm_base_url: str
    llm_api_key: str | None
    synthesis_model: str
    synthesis_temperature: float
    llm_timeout_sec: float
    max_prompt_chars: int
    history_limit: int
    max_concurrent_steps: int
    step_timeout_sec: float
    max_step_attempts: int
    retry_backoff_ms: int
    confirm_risk_threshold: RiskLevel
    progress_buffer: int
    pending_plan_ttl_sec: float
    db_path: str
    log_level: str


def _env(name: str) -> str | None:
    return _clean(os.getenv(ENV_PREFIX + name))


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def _as_int(name: str, default: int, *, lo: int | None = None, hi: int | None = None) -> int:
    raw = _env(name)
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        value = default
    if lo is not None:
        value = max(lo, value)
    if hi is not None:
        value = min(hi, value)
    return value


def _as_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _as_risk(name: str, default: RiskLevel) -> RiskLevel:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return RiskLevel.parse(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    backend = (_env("LLM_BACKEND") or "ollama").lower()
    default_db = Path(__file__).resolve().parent / DB_FILENAME
    return Settings(
        llm_backend=backend,
        llm_base_url=(_env("LLM_BASE_URL") or _DEFAULT_BASE_URLS.get(backend, "")).rstrip("/"),
        llm_api_key=_env("LLM_API_KEY"),
        synthesis_model=_env("SYNTHESIS_MODEL") or "llama3.1:latest",
        synthesis_temperature=_as_float("SYNTHESIS_TEMPERATURE", 0.4),
        llm_timeout_sec=_as_float("LLM_TIMEOUT_SEC", 30.0),
        max_prompt_chars=_as_int("MAX_PROMPT_CHARS", 8000, lo=1000),
        history_limit=_as_int("HISTORY_LIMIT", 6, lo=0),
        max_concurrent_steps=_as_int("MAX_CONCURRENT_STEPS", 2, lo=1, hi=5),
        step_timeout_sec=_as_float("STEP_TIMEOUT_SEC", 60.0),
        max_step_attempts=_as_int("MAX_STEP_ATTEMPTS", 2, lo=1, hi=5),
        retry_backoff_ms=_as_int("RETRY_BACKOFF_MS", 150, lo=0),
        confirm_risk_threshold=_as_risk("CONFIRM_RISK_THRESHOLD", RiskLevel.HIGH),
        progress_buffer=_as_int("PROGRESS_BUFFER", 256, lo=1),
        pending_plan_ttl_sec=_as_float("PENDING_PLAN_TTL_SEC", 45.0),
        db_path=_env("DB_PATH") or str(default_db),
        log_level=(_env("LOG_LEVEL") or "INFO").upper(),
    )
