from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_SPECIAL_CHARS = set("{}[]().,;:!?\"'`-_=+*&^%$#@~|\\/")
_CONTEXT_STEPS = (1024, 2048, 4096, 8192, 16384, 32768, 65536, 131072)


def estimate_tokens(text: str) -> int:
    """Rough token count: words weigh 1.3, punctuation 0.3."""
    if not text:
        return 0
    words = len(re.split(r"\s+", text.strip()))
    specials = sum(1 for ch in text if ch in _SPECIAL_CHARS)
    return int(words * 1.3 + specials * 0.3)


def optimal_context(
    *parts: str,
    reserve_tokens: int = 1024,
    warning_threshold: int = 32768,
) -> int:
    """Smallest power-of-two context window that fits the prompt plus a response reserve."""
    needed = sum(estimate_tokens(p) for p in parts) + reserve_tokens
    for size in _CONTEXT_STEPS:
        if needed <= size:
            chosen = size
            break
    else:
        chosen = needed
    if chosen > warning_threshold:
        logger.warning("Context of %d tokens exceeds warning threshold %d", chosen, warning_threshold)
    return chosen
