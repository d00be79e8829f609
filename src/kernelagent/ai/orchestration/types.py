"""Core type definitions for the reasoning loop.

This module defines the immutable dataclasses that flow between the delta
accumulator, the tool invoker, the conversation store, and the loop
controller. All types are frozen so they can be shared across stages safely.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, get_args

from openai.types.chat import ChatCompletionMessageParam

from ...sandbox import ExecutionOutcome
from .errors import InvalidArguments

__all__ = [
    "MessageRole",
    "Message",
    "ToolCallRequest",
    "ToolCallFragment",
    "PartialDelta",
    "ToolResult",
    "parse_tool_arguments",
]


MessageRole = Literal["system", "user", "assistant", "tool"]
_ROLES: frozenset[str] = frozenset(get_args(MessageRole))


# -----------------------------------------------------------------------------
# Tool Calls
# -----------------------------------------------------------------------------


def parse_tool_arguments(arguments_json: str) -> dict[str, Any]:
    """Parse tool arguments from a JSON string.

    Empty text yields an empty dictionary.

    Raises:
        InvalidArguments: If the text is not valid JSON or not a JSON object.
    """
    text = (arguments_json or "").strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidArguments(f"Invalid JSON in tool arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise InvalidArguments(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A completed tool call requested by the assistant.

    Attributes:
        id: Opaque identifier, unique within the assistant turn.
        name: Name of the tool to call.
        arguments_json: Raw JSON arguments, parsed lazily.
        index: Position in the assistant's tool_calls sequence.
    """

    id: str
    name: str
    arguments_json: str = ""
    index: int = 0

    def parse_arguments(self) -> dict[str, Any]:
        """Parse the raw arguments into a dictionary.

        Raises:
            InvalidArguments: If the payload is not a JSON object.
        """
        return parse_tool_arguments(self.arguments_json)

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any], index: int = 0) -> ToolCallRequest:
        function = param.get("function") or {}
        return cls(
            id=str(param.get("id", "")),
            name=str(function.get("name", "")),
            arguments_json=str(function.get("arguments", "") or ""),
            index=int(param.get("index", index)),
        )


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message stored in the conversation.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message (may be empty).
        tool_calls: Tool calls requested by the assistant.
        tool_call_id: ID linking a tool result back to its request.
    """

    role: MessageRole
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.content is None:
            object.__setattr__(self, "content", "")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("Only assistant messages may carry tool calls")
        if self.role == "tool":
            if not self.tool_call_id:
                raise ValueError("Tool messages require a tool_call_id")
        elif self.tool_call_id is not None:
            raise ValueError("tool_call_id is only valid on tool messages")

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload  # type: ignore[return-value]

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from OpenAI's ChatCompletionMessageParam format."""
        raw_calls = param.get("tool_calls") or ()
        tool_calls = tuple(
            ToolCallRequest.from_chat_param(call, index) for index, call in enumerate(raw_calls)
        )
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=str(param.get("content") or ""),
            tool_calls=tool_calls,
            tool_call_id=param.get("tool_call_id"),
        )

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Sequence[ToolCallRequest] = ()) -> Message:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


# -----------------------------------------------------------------------------
# Streaming Fragments
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallFragment:
    """One index-addressed piece of a streamed tool call.

    Any of the textual fields may carry only part of the final value.
    """

    index: int
    id: str | None = None
    type: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(slots=True, frozen=True)
class PartialDelta:
    """One fragment of a streamed assistant turn."""

    role: str | None = None
    content: str | None = None
    tool_calls: tuple[ToolCallFragment, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def is_empty(self) -> bool:
        return not self.role and not self.content and not self.tool_calls


# -----------------------------------------------------------------------------
# Tool Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Bounded outcome of a tool invocation.

    Attributes:
        success: Whether the tool ran and the code succeeded.
        output: Summarized, size-capped output text for the model.
        outcome: Raw sandbox outcome, never sent to the model.
    """

    success: bool
    output: str
    outcome: ExecutionOutcome | None = field(default=None, compare=False, repr=False)

    def to_content(self) -> str:
        """Render the JSON body stored in the tool-role message."""
        return json.dumps({"success": self.success, "output": self.output}, ensure_ascii=False)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "output": self.output}
