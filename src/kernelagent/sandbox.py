"""Sandbox protocol and structured execution outcomes.

The sandbox itself lives outside this package; anything that can run code and
report Jupyter-style output events can be plugged in through :class:`Sandbox`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Protocol, Union, runtime_checkable

__all__ = [
    "Sandbox",
    "StreamOutput",
    "ResultOutput",
    "ErrorOutput",
    "OutputEvent",
    "ExecutionOutcome",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StreamOutput:
    """Text written to stdout or stderr."""

    text: str
    name: str = "stdout"
    kind: Literal["stream"] = "stream"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "name": self.name, "text": self.text}


@dataclass(slots=True, frozen=True)
class ResultOutput:
    """Rich result keyed by MIME type (``execute_result`` or ``display_data``)."""

    data: Mapping[str, Any]
    kind: Literal["execute_result", "display_data"] = "execute_result"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "data": dict(self.data)}


@dataclass(slots=True, frozen=True)
class ErrorOutput:
    """An exception raised by the executed code."""

    ename: str
    evalue: str
    traceback: tuple[str, ...] = ()
    kind: Literal["error"] = "error"

    def __post_init__(self) -> None:
        if not isinstance(self.traceback, tuple):
            object.__setattr__(self, "traceback", tuple(self.traceback))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "ename": self.ename,
            "evalue": self.evalue,
            "traceback": list(self.traceback),
        }


OutputEvent = Union[StreamOutput, ResultOutput, ErrorOutput]


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    """Result of running code in the sandbox.

    Attributes:
        success: False when the code raised or the sandbox failed.
        outputs: Output events in the order the sandbox produced them.
        error: Top-level failure description, if any.
    """

    success: bool
    outputs: tuple[OutputEvent, ...] = ()
    error: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.outputs, tuple):
            object.__setattr__(self, "outputs", tuple(self.outputs))

    def stdout_text(self) -> str:
        """Return the concatenated stdout stream text."""
        return "".join(
            event.text for event in self.outputs if isinstance(event, StreamOutput) and event.name == "stdout"
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "outputs": [event.to_dict() for event in self.outputs],
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_events(cls, events: Iterable[Mapping[str, Any]], *, error: str | None = None) -> ExecutionOutcome:
        """Build an outcome from Jupyter-style ``{"type", "data"}`` event mappings.

        Unknown event types are skipped. Any error event marks the outcome as
        unsuccessful.
        """
        outputs: list[OutputEvent] = []
        has_error = error is not None
        for event in events:
            event_type = event.get("type")
            data = event.get("data") or {}
            if event_type == "stream":
                outputs.append(StreamOutput(text=str(data.get("text", "")), name=str(data.get("name", "stdout"))))
            elif event_type in ("execute_result", "display_data"):
                outputs.append(ResultOutput(data=dict(data.get("data") or {}), kind=event_type))
            elif event_type in ("error", "execute_error"):
                has_error = True
                outputs.append(
                    ErrorOutput(
                        ename=str(data.get("ename") or "Error"),
                        evalue=str(data.get("evalue") or "Unknown error"),
                        traceback=tuple(str(line) for line in data.get("traceback") or ()),
                    )
                )
            else:
                LOGGER.debug("Skipping unknown sandbox event type %r", event_type)
        return cls(success=not has_error, outputs=tuple(outputs), error=error)


@runtime_checkable
class Sandbox(Protocol):
    """Protocol for code-execution sandboxes.

    ``execute`` must not raise for errors in the executed code (those appear
    as :class:`ErrorOutput` events). It may raise for infrastructure failures
    such as a kernel that is not running.
    """

    async def execute(self, code: str) -> ExecutionOutcome:
        ...

    def is_ready(self) -> bool:
        ...
