"""Streaming delta accumulation.

Folds the partial fragments of a streamed assistant turn into one complete
message. Every field follows an explicit merge rule, so the result does not
depend on how the transport chunked the stream:

- text fields (``content``, tool ``name``, tool ``arguments``) concatenate;
- scalar fields (``role``, tool ``id``, tool ``type``) keep the first
  non-empty value;
- tool-call fragments merge per ``index``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from .errors import AccumulationDefect
from .types import Message, PartialDelta, ToolCallFragment, ToolCallRequest

__all__ = [
    "PartialMessage",
    "accumulate",
    "accumulate_all",
    "merge_deltas",
    "merge_fragments",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Merge Rules
# -----------------------------------------------------------------------------


def _concatenate(current: str | None, incoming: str | None) -> str | None:
    if not incoming:
        return current
    return (current or "") + incoming


def _first_wins(current: str | None, incoming: str | None) -> str | None:
    if current:
        return current
    return incoming or current


_FRAGMENT_RULES: Mapping[str, Callable[[str | None, str | None], str | None]] = {
    "id": _first_wins,
    "type": _first_wins,
    "name": _concatenate,
    "arguments": _concatenate,
}


def merge_fragments(current: ToolCallFragment, incoming: ToolCallFragment) -> ToolCallFragment:
    """Merge two fragments addressed to the same tool-call index."""
    if current.index != incoming.index:
        raise ValueError(f"Cannot merge fragments for index {current.index} and {incoming.index}")
    merged = {
        name: rule(getattr(current, name), getattr(incoming, name))
        for name, rule in _FRAGMENT_RULES.items()
    }
    return ToolCallFragment(index=current.index, **merged)


def _merge_slots(
    slots: Iterable[ToolCallFragment],
    fragments: Iterable[ToolCallFragment],
) -> tuple[ToolCallFragment, ...]:
    by_index = {slot.index: slot for slot in slots}
    for fragment in fragments:
        if fragment.index < 0:
            raise AccumulationDefect(message=f"Tool call fragment index must be non-negative, got {fragment.index}")
        existing = by_index.get(fragment.index)
        by_index[fragment.index] = fragment if existing is None else merge_fragments(existing, fragment)
    return tuple(by_index[index] for index in sorted(by_index))


# -----------------------------------------------------------------------------
# Partial Message
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PartialMessage:
    """The in-progress assistant turn built from streamed deltas.

    Attributes:
        role: First role announced by the stream, if any.
        content: Concatenated text content so far.
        tool_calls: Index-addressed tool-call slots, sorted by index.
    """

    role: str | None = None
    content: str = ""
    tool_calls: tuple[ToolCallFragment, ...] = ()

    def missing_indices(self) -> tuple[int, ...]:
        if not self.tool_calls:
            return ()
        present = {slot.index for slot in self.tool_calls}
        return tuple(index for index in range(max(present) + 1) if index not in present)

    def finalize(self) -> Message:
        """Convert into a complete assistant :class:`Message`.

        Raises:
            AccumulationDefect: If tool-call indices are not contiguous from 0.
        """
        missing = self.missing_indices()
        if missing:
            LOGGER.warning("Streamed tool calls have index gaps: %s", missing)
            raise AccumulationDefect(missing)
        requests = tuple(
            ToolCallRequest(
                id=slot.id or f"call_{slot.index}_{uuid.uuid4().hex[:8]}",
                name=slot.name or "",
                arguments_json=slot.arguments or "",
                index=slot.index,
            )
            for slot in self.tool_calls
        )
        return Message(role=self.role or "assistant", content=self.content, tool_calls=requests)  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# Accumulation
# -----------------------------------------------------------------------------


def accumulate(previous: PartialMessage, delta: PartialDelta) -> PartialMessage:
    """Apply one streamed delta to the partial message. Pure."""
    return PartialMessage(
        role=_first_wins(previous.role, delta.role),
        content=_concatenate(previous.content, delta.content) or "",
        tool_calls=_merge_slots(previous.tool_calls, delta.tool_calls),
    )


def accumulate_all(
    deltas: Iterable[PartialDelta],
    initial: PartialMessage | None = None,
) -> PartialMessage:
    """Fold a sequence of deltas, starting from ``initial`` or an empty message."""
    message = initial or PartialMessage()
    for delta in deltas:
        message = accumulate(message, delta)
    return message


def merge_deltas(first: PartialDelta, second: PartialDelta) -> PartialDelta:
    """Combine two consecutive deltas into one using the same merge rules.

    ``accumulate(accumulate(m, a), b) == accumulate(m, merge_deltas(a, b))``.
    """
    return PartialDelta(
        role=_first_wins(first.role, second.role),
        content=_concatenate(first.content, second.content),
        tool_calls=_merge_slots(first.tool_calls, second.tool_calls),
    )
