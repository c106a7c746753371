from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

EVENT_TYPES = (
    "start",
    "red_flags_detected",
    "stage_start",
    "stage_progress",
    "stage_complete",
    "stage_error",
    "overall_progress",
    "complete",
    "error",
)

ProgressCallback = Callable[[float, str], None]


def now_ts() -> float:
    return time.time()


@dataclass
class PipelineEvent:
    type: str
    progress: Optional[float] = None
    message: str = ""
    stage_id: Optional[str] = None
    stage_name: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=now_ts)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"unknown pipeline event type: {self.type}")


EventCallback = Callable[[PipelineEvent], None]


@dataclass
class EventStream:
    """Event buffer shared between the pipeline thread and a reader thread."""

    events: list[PipelineEvent] = field(default_factory=list)
    done: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _cond: threading.Condition = field(init=False)

    def __post_init__(self) -> None:
        self._cond = threading.Condition(self._lock)

    def append(self, event: PipelineEvent) -> None:
        with self._cond:
            self.events.append(event)
            if event.type in {"complete", "error"}:
                self.done = True
            self._cond.notify_all()

    __call__ = append

    def close(self) -> None:
        with self._cond:
            self.done = True
            self._cond.notify_all()

    def wait_for_events(self, last_index: int, timeout: float = 1.0) -> tuple[list[PipelineEvent], bool]:
        with self._cond:
            if last_index >= len(self.events) and not self.done:
                self._cond.wait(timeout=timeout)
            return self.events[last_index:], self.done

    def types(self) -> list[str]:
        with self._cond:
            return [event.type for event in self.events]


def progress_observer(progress: Optional[ProgressCallback]) -> EventCallback:
    """Adapt a ``(progress, message)`` callback to the event observer shape."""

    def observe(event: PipelineEvent) -> None:
        if progress is None or event.progress is None or not event.message:
            return
        if event.type in {"start", "stage_start", "stage_progress", "overall_progress", "complete"}:
            progress(event.progress, event.message)

    return observe


class CancellationToken:
    """Cooperative cancellation flag checked between stages, batches and calls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            from .errors import PipelineCancelled

            raise PipelineCancelled(f"cancelled {where}".strip())
