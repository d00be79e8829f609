"""Append-only conversation history shared across loop runs."""

from __future__ import annotations

import logging
from typing import Any, Iterator

from .types import Message

__all__ = ["ConversationStore"]

LOGGER = logging.getLogger(__name__)


class ConversationStore:
    """Ordered message history owned by a single loop controller.

    Messages are kept in insertion order and never reordered. A tool-role
    message is only accepted when its ``tool_call_id`` names a tool call from
    an earlier assistant message.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._known_call_ids: set[str] = set()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def append(self, message: Message) -> None:
        """Append ``message`` to the history.

        Raises:
            ValueError: If a tool message references an unknown tool call id.
        """
        if message.role == "tool" and message.tool_call_id not in self._known_call_ids:
            raise ValueError(f"Tool message references unknown tool_call_id {message.tool_call_id!r}")
        self._messages.append(message)
        for call in message.tool_calls:
            self._known_call_ids.add(call.id)
        LOGGER.debug("Conversation now holds %d messages (appended %s)", len(self._messages), message.role)

    def messages(self) -> tuple[Message, ...]:
        """Return a snapshot of the history."""
        return tuple(self._messages)

    def clear(self) -> None:
        self._messages.clear()
        self._known_call_ids.clear()

    def character_count(self) -> int:
        """Approximate context size: characters of content and tool arguments."""
        total = 0
        for message in self._messages:
            total += len(message.content)
            total += sum(len(call.arguments_json) for call in message.tool_calls)
        return total

    def to_chat_params(self) -> list[dict[str, Any]]:
        return [dict(message.to_chat_param()) for message in self._messages]
