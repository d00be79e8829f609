"""Tests for the reasoning loop controller."""

from __future__ import annotations

import asyncio
import json

import pytest

from kernelagent.ai.orchestration.conversation import ConversationStore
from kernelagent.ai.orchestration.errors import (
    AccumulationDefect,
    LoopBusyError,
    SandboxUnavailableError,
    TransportError,
)
from kernelagent.ai.orchestration.runner import LoopConfig, LoopController, LoopState
from kernelagent.ai.orchestration.tool_invoker import ToolInvoker
from kernelagent.ai.orchestration.types import PartialDelta, ToolCallFragment, ToolResult
from kernelagent.services.telemetry import InMemoryProgressSink, ProgressChannel, ProgressKind

from tests.helpers import FakeSandbox, MockModelClient, text_response, tool_call_response


def _controller(
    client: MockModelClient,
    sandbox: FakeSandbox | None = None,
    *,
    progress: ProgressChannel | None = None,
    config: LoopConfig | None = None,
) -> LoopController:
    invoker = ToolInvoker(sandbox or FakeSandbox(), progress=progress)
    return LoopController(client, invoker, ConversationStore(), progress=progress, config=config)


class RaisingInvoker(ToolInvoker):
    """Invoker whose invoke() escapes with an unexpected exception."""

    async def invoke(self, name: str, arguments_json: str) -> ToolResult:
        raise RuntimeError("invoker exploded")


class ClosingClient:
    """Client whose stream records when it is closed early."""

    def __init__(self, deltas: list[PartialDelta]) -> None:
        self.deltas = deltas
        self.closed = False
        self.exhausted = False

    async def stream_completion(self, messages, *, tools=None, temperature=None):
        try:
            for delta in self.deltas:
                yield delta
            self.exhausted = True
        finally:
            self.closed = True


# =============================================================================
# Termination
# =============================================================================


class TestLoopTermination:
    """Tests for natural stops and the step budget."""

    @pytest.mark.asyncio
    async def test_plain_answer_finishes_after_one_call(self) -> None:
        """Should stop as soon as the assistant answers without tools."""
        client = MockModelClient([text_response("Hi there")])
        controller = _controller(client)

        result = await controller.run("Hello")

        assert result.state is LoopState.FINISHED
        assert result.completion_calls == 1
        assert result.steps == 0
        assert result.final_text == "Hi there"
        assert [m.role for m in controller.history()] == ["user", "assistant"]
        assert controller.state is LoopState.FINISHED

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self) -> None:
        """Should feed the tool result back before the final answer."""
        client = MockModelClient([tool_call_response("print(2 + 2)"), text_response("It is 4.")])
        sandbox = FakeSandbox()
        controller = _controller(client, sandbox)

        result = await controller.run("What is 2 + 2?")

        assert result.state is LoopState.FINISHED
        assert result.completion_calls == 2
        assert result.tool_calls == 1
        assert sandbox.executed == ["print(2 + 2)"]
        roles = [m.role for m in controller.history()]
        assert roles == ["user", "assistant", "tool", "assistant"]

    @pytest.mark.asyncio
    async def test_budget_caps_completion_calls(self, progress: ProgressChannel, progress_sink: InMemoryProgressSink) -> None:
        """Should make exactly max_steps completion calls when tools never stop."""
        client = MockModelClient(default=tool_call_response("loop()"))
        controller = _controller(client, progress=progress)

        result = await controller.run("Keep going", max_steps=3)

        assert client.call_count == 3
        assert result.state is LoopState.EXHAUSTED
        assert result.steps == 3
        warnings = progress_sink.of_kind(ProgressKind.WARNING)
        assert any("maximum of 3 steps" in event.text for event in warnings)

    @pytest.mark.asyncio
    async def test_budget_of_one(self) -> None:
        client = MockModelClient(default=tool_call_response())
        controller = _controller(client)

        result = await controller.run("Go", max_steps=1)

        assert result.state is LoopState.EXHAUSTED
        assert client.call_count == 1

    @pytest.mark.asyncio
    async def test_configured_budget_used_by_default(self) -> None:
        client = MockModelClient(default=tool_call_response())
        controller = _controller(client, config=LoopConfig(max_steps=2))

        await controller.run("Go")

        assert client.call_count == 2

    @pytest.mark.asyncio
    async def test_empty_assistant_turn_finishes(self) -> None:
        client = MockModelClient([[]])
        controller = _controller(client)

        result = await controller.run("Hello")

        assert result.state is LoopState.FINISHED
        assert controller.history()[-1].content == ""


# =============================================================================
# Budget reminders
# =============================================================================


class TestBudgetReminder:
    """Tests for the wrap-up reminder near the end of the budget."""

    @pytest.mark.asyncio
    async def test_no_reminder_far_from_budget(self) -> None:
        client = MockModelClient([tool_call_response(), text_response("done")])
        controller = _controller(client)

        await controller.run("Go", max_steps=5)

        user_messages = [m for m in controller.history() if m.role == "user"]
        assert [m.content for m in user_messages] == ["Go"]

    @pytest.mark.asyncio
    async def test_reminder_follows_tool_results_near_budget(self) -> None:
        """Should append a user reminder after the tool results of late steps."""
        client = MockModelClient(default=tool_call_response())
        controller = _controller(client)

        await controller.run("Go", max_steps=3)

        history = controller.history()
        reminders = [m for m in history if m.role == "user" and m is not history[0]]
        assert len(reminders) == 3
        assert "1 of 3 steps" in reminders[0].content
        assert history[-1].role == "user"
        assert "used all 3" in history[-1].content
        assert history[-2].role == "tool"


# =============================================================================
# Tool results
# =============================================================================


class TestToolResults:
    """Tests for tool messages recorded in the conversation."""

    @pytest.mark.asyncio
    async def test_tool_message_links_to_call_id(self) -> None:
        client = MockModelClient([tool_call_response(call_id="call_abc"), text_response("ok")])
        controller = _controller(client)

        await controller.run("Go")

        history = controller.history()
        assistant, tool = history[1], history[2]
        assert assistant.tool_calls[0].id == "call_abc"
        assert tool.tool_call_id == "call_abc"
        assert json.loads(tool.content) == {"success": True, "output": "ok"}

    @pytest.mark.asyncio
    async def test_sandbox_failure_does_not_stop_the_loop(self) -> None:
        """Should record the failure as a tool message and keep going."""
        client = MockModelClient([tool_call_response(), text_response("Sorry, the kernel failed.")])
        controller = _controller(client, FakeSandbox(error=RuntimeError("kernel died")))

        result = await controller.run("Go")

        assert result.state is LoopState.FINISHED
        assert client.call_count == 2
        tool = controller.history()[2]
        assert json.loads(tool.content) == {"success": False, "output": "Execution error: kernel died"}

    @pytest.mark.asyncio
    async def test_unexpected_invoker_exception_becomes_error_content(
        self, progress: ProgressChannel, progress_sink: InMemoryProgressSink
    ) -> None:
        client = MockModelClient([tool_call_response(), text_response("ok")])
        invoker = RaisingInvoker(FakeSandbox(), progress=progress)
        controller = LoopController(client, invoker, progress=progress)

        await controller.run("Go")

        tool = controller.history()[2]
        assert json.loads(tool.content) == {"success": False, "error": "invoker exploded"}
        assert "Error executing code: invoker exploded" in [e.text for e in progress_sink.of_kind(ProgressKind.ERROR)]

    @pytest.mark.asyncio
    async def test_multiple_calls_run_in_index_order(self) -> None:
        deltas = [
            PartialDelta(role="assistant"),
            PartialDelta(
                tool_calls=(
                    ToolCallFragment(index=1, id="call_b", name="executeCode", arguments='{"code": "second"}'),
                    ToolCallFragment(index=0, id="call_a", name="executeCode", arguments='{"code": "first"}'),
                )
            ),
        ]
        sandbox = FakeSandbox()
        controller = _controller(MockModelClient([deltas, text_response("done")]), sandbox)

        result = await controller.run("Go")

        assert sandbox.executed == ["first", "second"]
        assert result.tool_calls == 2
        assert [m.tool_call_id for m in controller.history() if m.role == "tool"] == ["call_a", "call_b"]


# =============================================================================
# Context and streaming
# =============================================================================


class TestContextAndStreaming:
    """Tests for prompt context construction and streamed progress."""

    @pytest.mark.asyncio
    async def test_context_starts_with_system_prompt(self) -> None:
        client = MockModelClient()
        controller = _controller(client, config=LoopConfig(system_prompt="Be terse.", temperature=0.2))

        await controller.run("Hello")

        call = client.calls[0]
        assert call["messages"][0] == {"role": "system", "content": "Be terse."}
        assert call["messages"][1] == {"role": "user", "content": "Hello"}
        assert call["tools"][0]["function"]["name"] == "executeCode"
        assert call["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_history_spans_runs(self) -> None:
        client = MockModelClient([text_response("first"), text_response("second")])
        controller = _controller(client)

        await controller.run("one")
        await controller.run("two")

        contents = [m["content"] for m in client.calls[1]["messages"]]
        assert contents[1:] == ["one", "first", "two"]

    @pytest.mark.asyncio
    async def test_streamed_text_is_forwarded(self, progress: ProgressChannel, progress_sink: InMemoryProgressSink) -> None:
        """Should forward each text fragment, appending after the first."""
        client = MockModelClient([text_response("Hello!", chunk_size=3)])
        controller = _controller(client, progress=progress)

        await controller.run("Hi")

        assistant = progress_sink.of_kind(ProgressKind.ASSISTANT)
        assert [event.text for event in assistant] == ["Hel", "lo!"]
        assert [event.append for event in assistant] == [False, True]

    @pytest.mark.asyncio
    async def test_large_context_warns_once(self, progress: ProgressChannel, progress_sink: InMemoryProgressSink) -> None:
        client = MockModelClient([tool_call_response(), text_response("done")])
        controller = _controller(client, progress=progress, config=LoopConfig(system_prompt="x", context_warning_chars=10))

        await controller.run("A long enough request")

        warnings = [e for e in progress_sink.of_kind(ProgressKind.WARNING) if "context is large" in e.text]
        assert len(warnings) == 1


# =============================================================================
# Guards and failures
# =============================================================================


class TestGuardsAndFailures:
    """Tests for preconditions and propagated errors."""

    @pytest.mark.asyncio
    async def test_rejects_non_positive_budget(self) -> None:
        controller = _controller(MockModelClient())

        with pytest.raises(ValueError):
            await controller.run("Go", max_steps=0)

        assert controller.history() == ()

    @pytest.mark.asyncio
    async def test_rejects_unready_sandbox(self) -> None:
        client = MockModelClient()
        controller = _controller(client, FakeSandbox(ready=False))

        with pytest.raises(SandboxUnavailableError):
            await controller.run("Go")

        assert client.call_count == 0
        assert controller.history() == ()

    @pytest.mark.asyncio
    async def test_rejects_concurrent_run(self) -> None:
        gate = asyncio.Event()
        client = MockModelClient(gate=gate)
        controller = _controller(client)

        first = asyncio.create_task(controller.run("first"))
        await asyncio.sleep(0)
        assert controller.is_running

        with pytest.raises(LoopBusyError):
            await controller.run("second")
        with pytest.raises(LoopBusyError):
            controller.reset()

        gate.set()
        result = await first
        assert result.state is LoopState.FINISHED
        assert not controller.is_running

    @pytest.mark.asyncio
    async def test_transport_error_keeps_history(self, progress: ProgressChannel, progress_sink: InMemoryProgressSink) -> None:
        """Should propagate the failure and keep messages appended so far."""
        client = MockModelClient([[PartialDelta(content="par"), TransportError("connection reset")]])
        controller = _controller(client, progress=progress)

        with pytest.raises(TransportError):
            await controller.run("Go")

        assert controller.state is LoopState.FAILED
        assert [m.role for m in controller.history()] == ["user"]
        assert "Agent error: connection reset" in [e.text for e in progress_sink.of_kind(ProgressKind.ERROR)]

    @pytest.mark.asyncio
    async def test_index_gap_fails_the_run(self) -> None:
        deltas = [PartialDelta(tool_calls=(ToolCallFragment(index=1, id="call_b", name="executeCode"),))]
        controller = _controller(MockModelClient([deltas]))

        with pytest.raises(AccumulationDefect):
            await controller.run("Go")

        assert controller.state is LoopState.FAILED

    @pytest.mark.asyncio
    async def test_stream_is_closed_when_accumulation_fails(self) -> None:
        """Should close the abandoned stream when a fragment is rejected."""
        client = ClosingClient(
            [
                PartialDelta(tool_calls=(ToolCallFragment(index=-1, id="call_x", name="executeCode"),)),
                PartialDelta(content="never read"),
            ]
        )
        controller = LoopController(client, ToolInvoker(FakeSandbox()), ConversationStore())

        with pytest.raises(AccumulationDefect):
            await controller.run("Go")

        assert client.closed
        assert not client.exhausted
        assert controller.state is LoopState.FAILED
        assert not controller.is_running

    @pytest.mark.asyncio
    async def test_reset_clears_history(self) -> None:
        controller = _controller(MockModelClient())
        await controller.run("Go")

        controller.reset()

        assert controller.history() == ()
        assert controller.state is LoopState.IDLE
