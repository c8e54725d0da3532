from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from coreflow.errors import InputError
from coreflow.models import ChatMessage, IntentAnalysis
from coreflow.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_REQUEST_CHARS = 4000
SIGNAL_CONFIDENCE = 0.9

_WORD_RE = re.compile(r"[^\W_]")


@dataclass(frozen=True)
class CapabilitySignal:
    capability: str
    domain: str
    patterns: Tuple[str, ...]


DEFAULT_SIGNALS: Tuple[CapabilitySignal, ...] = (
    CapabilitySignal(
        "device.status",
        "device_info",
        (
            r"\bbattery\b",
            r"\bstorage (left|space|usage)\b",
            r"\bdevice (status|info)\b",
            r"\bmemory usage\b",
        ),
    ),
    CapabilitySignal(
        "camera.capture",
        "camera",
        (
            r"\b(take|snap|capture|shoot)\b[\w\s]{0,20}?\b(photo|picture|pic|image|selfie)\b",
            r"\bphotograph\b",
        ),
    ),
    CapabilitySignal(
        "text.recognize",
        "vision",
        (
            r"\bread (the |any )?text\b",
            r"\bocr\b",
            r"\b(scan|extract|recogni[sz]e)\b[\w\s]{0,15}?\btext\b",
        ),
    ),
    CapabilitySignal(
        "location.current",
        "location",
        (
            r"\bwhere am i\b",
            r"\bmy (current )?(location|position)\b",
            r"\bgps\b",
        ),
    ),
    CapabilitySignal(
        "notifications.read",
        "notifications",
        (r"\bnotifications?\b",),
    ),
    CapabilitySignal(
        "web.fetch",
        "web",
        (
            r"https?://\S+",
            r"\b(open|fetch|browse|visit|load)\b[\w\s]{0,15}?\b(page|site|website|url)\b",
        ),
    ),
    CapabilitySignal(
        "text.summarize",
        "language",
        (r"\bsummari[sz]e\b", r"\bsummary\b", r"\btl;?dr\b"),
    ),
    CapabilitySignal(
        "contacts.search",
        "contacts",
        (r"\bcontacts?\b", r"\bphone number (of|for)\b"),
    ),
    CapabilitySignal(
        "messaging.send",
        "messaging",
        (r"\b(send|text)\b[\w\s]{0,20}?\b(sms|message|text)\b",),
    ),
)

_FOLLOW_UP_PATTERNS = [
    r"\bagain\b",
    r"\bsame (thing|as before)\b",
    r"\brepeat (that|it)\b",
    r"\bone more time\b",
]


class IntentAnalyzer:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        signals: Sequence[CapabilitySignal] = DEFAULT_SIGNALS,
        relevance_threshold: float = 0.75,
    ) -> None:
        self.registry = registry
        self.signals = tuple(signals)
        self.relevance_threshold = relevance_threshold

    def analyze(
        self,
        request: str,
        device_context: Optional[Dict[str, Any]] = None,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> IntentAnalysis:
        raw = _normalize(request)
        lower = raw.lower()
        hits = self._detect(lower)
        scoring_text = raw
        resolved = False

        if not hits and history and _is_follow_up(lower):
            previous = _last_user_message(history, exclude=raw)
            if previous:
                hits = self._detect(previous.lower())
                if hits:
                    scoring_text = previous
                    resolved = True

        scores = self.registry.score(scoring_text)
        required: List[str] = []
        domains: List[str] = []
        for _, signal in hits:
            if signal.capability not in required:
                required.append(signal.capability)
            if signal.domain not in domains:
                domains.append(signal.domain)

        optional: List[str] = []
        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
        for name, score in ranked:
            if score < self.relevance_threshold:
                break
            for tag in self.registry.require(name).capabilities:
                if tag not in required and tag not in optional:
                    optional.append(tag)

        best = ranked[0][1] if ranked else 0.0
        if best > 0:
            for name, score in ranked:
                if score < best:
                    break
                domain = self.registry.require(name).domain
                if domain not in domains:
                    domains.append(domain)

        confidence = max(SIGNAL_CONFIDENCE if hits else 0.0, best)
        analysis = IntentAnalysis(
            request=raw,
            domains=domains,
            required_capabilities=required,
            optional_capabilities=optional,
            confidence=round(confidence, 4),
            scores=scores,
            context=dict(device_context or {}),
            resolved_from_history=resolved,
        )
        logger.info(
            "[INTENT] domains=%s required=%s optional=%s confidence=%.2f",
            analysis.domains,
            analysis.required_capabilities,
            analysis.optional_capabilities,
            analysis.confidence,
        )
        return analysis

    def _detect(self, text: str) -> List[Tuple[int, CapabilitySignal]]:
        found: List[Tuple[int, CapabilitySignal]] = []
        for signal in self.signals:
            positions = [m.start() for p in signal.patterns for m in [re.search(p, text)] if m]
            if positions:
                found.append((min(positions), signal))
        found.sort(key=lambda x: x[0])
        return found


def _normalize(request: Any) -> str:
    if not isinstance(request, str):
        raise InputError("Request must be text")
    raw = request.strip()
    if not raw:
        raise InputError("Request is empty")
    if len(raw) > MAX_REQUEST_CHARS:
        raise InputError(f"Request exceeds {MAX_REQUEST_CHARS} characters")
    if not _WORD_RE.search(raw.lower()):
        raise InputError("Request could not be parsed")
    return raw


def _is_follow_up(text: str) -> bool:
    return any(re.search(p, text) for p in _FOLLOW_UP_PATTERNS)


def _last_user_message(history: Sequence[ChatMessage], *, exclude: str) -> Optional[str]:
    for msg in reversed(list(history)):
        if msg.role == "user" and msg.content.strip() and msg.content.strip() != exclude:
            return msg.content.strip()
    return None
