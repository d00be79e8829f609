"""Progress notifications streamed from the agent to observers."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)


class ProgressKind:
    """Well-known progress event kinds."""

    ASSISTANT = "assistant"
    INFO = "info"
    EXECUTION = "execution"
    ERROR = "error"
    WARNING = "warning"
    JOB = "job"


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """One human-readable notification.

    ``append`` marks text that continues the previous assistant fragment rather
    than starting a new line.
    """

    text: str
    kind: str = ProgressKind.INFO
    append: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ProgressListener = Callable[[ProgressEvent], None]


class InMemoryProgressSink:
    """Simple ring-buffer progress sink for local inspection and tests."""

    def __init__(self, capacity: int = 500) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[ProgressEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: ProgressEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def __call__(self, event: ProgressEvent) -> None:
        self.record(event)

    def tail(self, limit: int | None = None) -> list[ProgressEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def of_kind(self, kind: str) -> list[ProgressEvent]:
        return [event for event in self.tail() if event.kind == kind]

    def text(self) -> str:
        """Render the buffered events the way a terminal would show them."""
        parts: list[str] = []
        for event in self.tail():
            if event.append and parts:
                parts[-1] += event.text
            else:
                parts.append(event.text)
        return "\n".join(parts)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


class ProgressChannel:
    """Fan-out channel for progress notifications.

    Each agent owns its own channel; listeners never influence control flow,
    and a failing listener is logged and skipped.
    """

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> None:
        if listener is None:
            return
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, text: str, kind: str = ProgressKind.INFO, append: bool = False) -> ProgressEvent:
        event = ProgressEvent(text=text, kind=kind, append=append)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pragma: no cover - listeners must not break emitters
                LOGGER.debug("Progress listener %s failed", listener, exc_info=True)
        LOGGER.debug("Progress %s: %s", kind, text)
        return event


__all__ = [
    "InMemoryProgressSink",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressKind",
    "ProgressListener",
]
