"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, Mapping, Sequence

from kernelagent.ai.orchestration.types import PartialDelta, ToolCallFragment
from kernelagent.sandbox import ExecutionOutcome, StreamOutput

DeltaScript = Sequence["PartialDelta | BaseException"]


class FakeSandbox:
    """In-memory sandbox that records executed code.

    Outcomes are returned in order; once exhausted every run prints a short
    confirmation. ``error`` makes every execution raise, and ``delay`` keeps an
    execution in flight long enough to observe overlap.
    """

    def __init__(
        self,
        outcomes: Sequence[ExecutionOutcome] | None = None,
        *,
        ready: bool = True,
        error: BaseException | None = None,
        delay: float = 0.0,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.ready = ready
        self.error = error
        self.delay = delay
        self.executed: list[str] = []
        self.active = 0
        self.max_active = 0

    def is_ready(self) -> bool:
        return self.ready

    async def execute(self, code: str) -> ExecutionOutcome:
        self.executed.append(code)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if self.outcomes:
                return self.outcomes.pop(0)
            return ExecutionOutcome(success=True, outputs=(StreamOutput(text="ok\n"),))
        finally:
            self.active -= 1


class MockModelClient:
    """Scripted model client yielding pre-built deltas for each completion call.

    When the scripted responses run out, ``default`` is replayed (a plain text
    answer unless overridden). An exception placed in a script is raised at
    that point of the stream.
    """

    def __init__(
        self,
        responses: Sequence[DeltaScript] | None = None,
        *,
        default: DeltaScript | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.default = list(default) if default is not None else text_response("Done.")
        self.gate = gate
        self.calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def stream_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[PartialDelta]:
        index = len(self.calls)
        self.calls.append(
            {
                "messages": [dict(message) for message in messages],
                "tools": list(tools or ()),
                "temperature": temperature,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        script = self.responses[index] if index < len(self.responses) else self.default
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item


def text_response(text: str, *, chunk_size: int | None = None) -> list[PartialDelta]:
    """Build a streamed plain-text answer, optionally split into chunks."""
    if not chunk_size:
        return [PartialDelta(role="assistant", content=text)]
    chunks = [text[i : i + chunk_size] for i in range(0, len(text), chunk_size)]
    deltas = [PartialDelta(content=chunk) for chunk in chunks]
    if deltas:
        deltas[0] = PartialDelta(role="assistant", content=chunks[0])
    return deltas


def tool_call_response(
    code: str = "print('hi')",
    *,
    call_id: str = "call_1",
    explanation: str = "Run some code",
    name: str = "executeCode",
    index: int = 0,
    arguments: str | None = None,
) -> list[PartialDelta]:
    """Build a streamed tool call whose name and arguments arrive in pieces."""
    raw = arguments if arguments is not None else json.dumps({"code": code, "explanation": explanation})
    middle = len(raw) // 2
    split = max(1, len(name) // 2)
    return [
        PartialDelta(role="assistant"),
        PartialDelta(
            tool_calls=(
                ToolCallFragment(index=index, id=call_id, type="function", name=name[:split], arguments=""),
            )
        ),
        PartialDelta(tool_calls=(ToolCallFragment(index=index, name=name[split:], arguments=raw[:middle]),)),
        PartialDelta(tool_calls=(ToolCallFragment(index=index, arguments=raw[middle:]),)),
    ]
