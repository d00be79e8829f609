"""Reasoning Loop Controller.

Drives one user request through a bounded sequence of steps: stream a
completion, accumulate it into an assistant message, run the requested tool
calls, feed their results back, and repeat until the model answers without
tools or the step budget runs out.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ...services.telemetry import ProgressChannel, ProgressKind
from ..prompts import SYSTEM_PROMPT, step_budget_reminder, tool_schemas
from .accumulator import PartialMessage, accumulate
from .conversation import ConversationStore
from .errors import LoopBusyError, SandboxUnavailableError
from .tool_invoker import ToolInvoker
from .types import Message, PartialDelta, ToolCallRequest

__all__ = [
    "LoopConfig",
    "LoopController",
    "LoopResult",
    "LoopState",
    "ModelClient",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ModelClient(Protocol):
    """Protocol for model clients that stream chat completions as deltas.

    The AIClient class conforms to this protocol.
    """

    def stream_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[PartialDelta]:
        """Stream one assistant turn for the provided messages.

        Args:
            messages: The prompt context in chat-completions format.
            tools: Tool definitions for the model.
            temperature: Sampling temperature.

        Returns:
            An async iterator of partial deltas.
        """
        ...


# -----------------------------------------------------------------------------
# Configuration and Results
# -----------------------------------------------------------------------------


class LoopState(str, Enum):
    """State machine for a single loop run."""

    IDLE = "idle"
    AWAITING_COMPLETION = "awaiting_completion"
    HAS_TOOL_CALLS = "has_tool_calls"
    EXECUTING_TOOLS = "executing_tools"
    FINISHED = "finished"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class LoopConfig:
    """Configuration for the loop controller.

    Attributes:
        system_prompt: Fixed instructions prepended to every completion.
        temperature: Sampling temperature passed to the model.
        max_steps: Step budget used when ``run`` is not given one.
        context_warning_chars: Context size that triggers a one-time warning.
    """

    system_prompt: str = SYSTEM_PROMPT
    temperature: float | None = 0.7
    max_steps: int = 25
    context_warning_chars: int = 200_000


@dataclass(slots=True, frozen=True)
class LoopResult:
    """Summary of a finished loop run.

    The conversation store holds the actual product; this is bookkeeping for
    callers and job records.
    """

    state: LoopState
    steps: int
    completion_calls: int
    tool_calls: int
    final_text: str = ""
    duration_ms: float = 0.0

    def as_payload(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "steps": self.steps,
            "completion_calls": self.completion_calls,
            "tool_calls": self.tool_calls,
            "final_text": self.final_text,
            "duration_ms": round(self.duration_ms, 3),
        }


# -----------------------------------------------------------------------------
# Loop Controller
# -----------------------------------------------------------------------------


class LoopController:
    """Runs the bounded reasoning loop against one conversation.

    The controller is the only writer to its conversation store and refuses to
    start a second run while one is active.

    Example:
        >>> controller = LoopController(client, invoker, ConversationStore())
        >>> result = await controller.run("Plot a sine wave", max_steps=5)
        >>> result.state
        <LoopState.FINISHED: 'finished'>
    """

    def __init__(
        self,
        client: ModelClient,
        invoker: ToolInvoker,
        conversation: ConversationStore | None = None,
        *,
        progress: ProgressChannel | None = None,
        config: LoopConfig | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        """Initialize the loop controller.

        Args:
            client: Model client used for streamed completions.
            invoker: Tool invoker bound to the shared sandbox.
            conversation: Conversation store to extend; a fresh one by default.
            progress: Channel receiving streamed text and notifications.
            config: Optional loop configuration.
            tools: Tool definitions; the ``executeCode`` schema by default.
        """
        self._client = client
        self._invoker = invoker
        self._conversation = conversation if conversation is not None else ConversationStore()
        self._progress = progress or ProgressChannel()
        self._config = config or LoopConfig()
        self._tools = tuple(tools) if tools is not None else tool_schemas()
        self._state = LoopState.IDLE
        self._running = False
        self._context_warning_sent = False

    @property
    def config(self) -> LoopConfig:
        return self._config

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def conversation(self) -> ConversationStore:
        return self._conversation

    def set_system_prompt(self, prompt: str) -> None:
        self._config = replace(self._config, system_prompt=prompt)

    def history(self) -> tuple[Message, ...]:
        """Return a copy of the conversation history."""
        return self._conversation.messages()

    def reset(self) -> None:
        """Clear the conversation history.

        Raises:
            LoopBusyError: If a run is in progress.
        """
        if self._running:
            raise LoopBusyError("Cannot clear history while a loop run is active")
        self._conversation.clear()
        self._context_warning_sent = False
        self._state = LoopState.IDLE

    async def run(self, user_message: str, max_steps: int | None = None) -> LoopResult:
        """Run the loop for one user message.

        Args:
            user_message: The user's request, appended once at the start.
            max_steps: Step budget; the configured default when omitted.

        Returns:
            Summary of the run. The conversation store holds the transcript.

        Raises:
            ValueError: If ``max_steps`` is smaller than 1.
            LoopBusyError: If another run is active on this controller.
            SandboxUnavailableError: If the sandbox is not ready.
            TransportError: If a streamed completion fails.
            AccumulationDefect: If streamed tool calls have index gaps.
        """
        budget = self._config.max_steps if max_steps is None else int(max_steps)
        if budget < 1:
            raise ValueError(f"max_steps must be at least 1, got {budget}")
        if self._running:
            raise LoopBusyError("A loop run is already active")
        if not self._invoker.sandbox.is_ready():
            raise SandboxUnavailableError("Sandbox is not ready to execute code")

        self._running = True
        start_time = time.perf_counter()
        try:
            return await self._run_steps(user_message, budget, start_time)
        except Exception as exc:
            self._state = LoopState.FAILED
            LOGGER.error("Loop run failed: %s", exc)
            self._progress.emit(f"Agent error: {exc}", ProgressKind.ERROR)
            raise
        finally:
            self._running = False

    async def _run_steps(self, user_message: str, max_steps: int, start_time: float) -> LoopResult:
        self._conversation.append(Message.user(user_message))
        steps = 0
        completion_calls = 0
        tool_calls = 0

        while True:
            self._state = LoopState.AWAITING_COMPLETION
            LOGGER.debug("Loop step %d of %d", steps + 1, max_steps)
            assistant = await self._stream_assistant_message()
            completion_calls += 1
            self._conversation.append(assistant)

            if not assistant.has_tool_calls:
                self._state = LoopState.FINISHED
                return self._result(steps, completion_calls, tool_calls, assistant.content, start_time)

            self._state = LoopState.HAS_TOOL_CALLS
            LOGGER.debug("Assistant requested %d tool call(s)", len(assistant.tool_calls))
            self._state = LoopState.EXECUTING_TOOLS
            for call in assistant.tool_calls:
                content = await self._run_tool_call(call)
                self._conversation.append(Message.tool(content, call.id))
                tool_calls += 1

            steps += 1
            if steps >= max_steps - 2:
                self._conversation.append(Message.user(step_budget_reminder(steps, max_steps)))
            if steps >= max_steps:
                self._state = LoopState.EXHAUSTED
                LOGGER.warning("Loop reached max steps (%d)", max_steps)
                self._progress.emit(
                    f"⚠️ Reached the maximum of {max_steps} steps; stopping.",
                    ProgressKind.WARNING,
                )
                return self._result(steps, completion_calls, tool_calls, assistant.content, start_time)

    async def _stream_assistant_message(self) -> Message:
        messages = self._build_context()
        partial = PartialMessage()
        first_fragment = True
        stream = self._client.stream_completion(
            messages,
            tools=self._tools,
            temperature=self._config.temperature,
        )
        try:
            async for delta in stream:
                partial = accumulate(partial, delta)
                if delta.content:
                    self._progress.emit(delta.content, ProgressKind.ASSISTANT, append=not first_fragment)
                    first_fragment = False
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()
        return partial.finalize()

    def _build_context(self) -> list[dict[str, Any]]:
        context = [dict(Message.system(self._config.system_prompt).to_chat_param())]
        context.extend(self._conversation.to_chat_params())
        size = len(self._config.system_prompt) + self._conversation.character_count()
        LOGGER.debug("Prompt context: %d messages, ~%d characters", len(context), size)
        if size > self._config.context_warning_chars and not self._context_warning_sent:
            self._context_warning_sent = True
            LOGGER.warning(
                "Prompt context is %d characters (warning threshold %d); history is never truncated",
                size,
                self._config.context_warning_chars,
            )
            self._progress.emit(
                f"⚠️ Conversation context is large (~{size:,} characters); consider clearing history.",
                ProgressKind.WARNING,
            )
        return context

    async def _run_tool_call(self, call: ToolCallRequest) -> str:
        try:
            result = await self._invoker.invoke(call.name, call.arguments_json)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            LOGGER.warning("Tool call %s (%s) raised: %s", call.id, call.name, message)
            self._progress.emit(f"Error executing code: {message}", ProgressKind.ERROR)
            return json.dumps({"success": False, "error": message}, ensure_ascii=False)
        return result.to_content()

    def _result(
        self,
        steps: int,
        completion_calls: int,
        tool_calls: int,
        final_text: str,
        start_time: float,
    ) -> LoopResult:
        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.debug(
            "Loop ended in state %s after %d step(s), %d completion(s), %d tool call(s)",
            self._state.value,
            steps,
            completion_calls,
            tool_calls,
        )
        return LoopResult(
            state=self._state,
            steps=steps,
            completion_calls=completion_calls,
            tool_calls=tool_calls,
            final_text=final_text,
            duration_ms=duration_ms,
        )
