from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from coreflow.orchestrator import PreparedTurn


class PendingPlanCache:
    """Plans parked while waiting for a user decision.

    `take` removes the entry before returning it so a decision can only run a plan once.
    """

    def __init__(self, ttl_sec: float = 45.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._items: Dict[str, Tuple[float, PreparedTurn]] = {}
        self._lock = threading.Lock()

    def put(self, prepared: PreparedTurn) -> str:
        with self._lock:
            self._evict()
            self._items[prepared.plan.id] = (self._clock() + self.ttl_sec, prepared)
        return prepared.plan.id

    def take(self, plan_id: str) -> Optional[PreparedTurn]:
        with self._lock:
            self._evict()
            entry = self._items.pop(plan_id, None)
        return entry[1] if entry else None

    def __len__(self) -> int:
        with self._lock:
            self._evict()
            return len(self._items)

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, (deadline, _) in self._items.items() if deadline <= now]
        for key in expired:
            del self._items[key]
