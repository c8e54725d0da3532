from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from coreflow.models import utc_now

logger = logging.getLogger(__name__)


class ProgressKind(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    SUBSTITUTED = "substituted"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    PLAN_FINISHED = "plan_finished"


class ProgressEvent(BaseModel):
    plan_id: str
    step_id: Optional[str] = None
    seq: int = 0
    kind: ProgressKind
    message: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class ProgressSink(Protocol):
    def publish(self, event: ProgressEvent) -> None: ...


class CallbackSink:
    def __init__(self, callback: Callable[[ProgressEvent], None]) -> None:
        self.callback = callback

    def publish(self, event: ProgressEvent) -> None:
        try:
            self.callback(event)
        except Exception:  # noqa: BLE001
            logger.exception("Progress callback failed for %s", event.step_id)


class ProgressStream:
    """Bounded progress buffer. When full, the oldest event is dropped so
    publishing never blocks the scheduler."""

    _CLOSED = object()

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0
        self.closed = False

    def publish(self, event: ProgressEvent) -> None:
        if self.closed:
            return
        self._put(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._put(self._CLOSED)

    def _put(self, item: object) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item

    def drain(self) -> list:
        out = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return out
            if item is not self._CLOSED:
                out.append(item)


class StepProgress:
    """Per-step publisher that stamps monotonically increasing sequence numbers."""

    def __init__(self, sink: Optional[ProgressSink], plan_id: str) -> None:
        self.sink = sink
        self.plan_id = plan_id
        self._seq: Dict[Optional[str], int] = {}

    def emit(self, step_id: Optional[str], kind: ProgressKind, message: str = "") -> None:
        seq = self._seq.get(step_id, 0) + 1
        self._seq[step_id] = seq
        if self.sink is None:
            return
        self.sink.publish(
            ProgressEvent(plan_id=self.plan_id, step_id=step_id, seq=seq, kind=kind, message=message)
        )

    def for_step(self, step_id: str) -> Callable[[str], None]:
        def _on_progress(text: str) -> None:
            self.emit(step_id, ProgressKind.PROGRESS, text)

        return _on_progress


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
