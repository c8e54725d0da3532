from __future__ import annotations

from enum import IntEnum
from typing import Iterable


class RiskLevel(IntEnum):
    """Ordered risk classes.

    LOW: read-only device info. MEDIUM: files, camera, sensors.
    HIGH: location, contacts, notifications. CRITICAL: system modifications.
    """

    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: str) -> "RiskLevel":
        try:
            return cls[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown risk level '{value}'") from exc

    def escalate(self, levels: int = 1) -> "RiskLevel":
        return RiskLevel(min(int(self) + max(levels, 0), int(RiskLevel.CRITICAL)))


def max_risk(levels: Iterable[RiskLevel]) -> RiskLevel:
    return max(levels, default=RiskLevel.LOW)


def assess_risk(step_risks: Iterable[RiskLevel], *, missing_permissions: bool) -> RiskLevel:
    if missing_permissions:
        return RiskLevel.CRITICAL
    return max_risk(step_risks)
