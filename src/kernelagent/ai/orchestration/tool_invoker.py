"""Tool Invoker: runs model-requested code in the sandbox.

The invoker turns a completed tool call into a bounded, sanitized
:class:`ToolResult`. Tool-level failures (unknown tool, bad arguments, a
sandbox that blows up) are rendered into the result instead of raised, so the
loop controller can always answer a tool call with a tool message.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Iterable, Mapping

from ...sandbox import ErrorOutput, ExecutionOutcome, OutputEvent, ResultOutput, Sandbox, StreamOutput
from ...services.telemetry import ProgressChannel, ProgressKind
from ..prompts import EXECUTE_CODE_TOOL_NAME
from .errors import InvalidArguments, MalformedToolCall, ToolExecutionError, UnsupportedTool
from .types import ToolResult, parse_tool_arguments

__all__ = [
    "ToolInvoker",
    "MAX_OUTPUT_LINES",
    "MAX_OUTPUT_CHARS",
    "MAX_TRACEBACK_LINES",
    "shorten_output",
    "strip_ansi",
    "render_output_event",
    "summarize_outcome",
]

LOGGER = logging.getLogger(__name__)

MAX_OUTPUT_LINES = 20
MAX_OUTPUT_CHARS = 1000
MAX_TRACEBACK_LINES = 5
NO_OUTPUT_MESSAGE = "Code executed successfully (no output)"

_ANSI_RE = re.compile(r"\x1B(?:\][^\x07\x1B]*(?:\x07|\x1B\\)|\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])")
_TEXT_MIME_PRIORITY = ("text/html", "application/json", "text/plain")


# -----------------------------------------------------------------------------
# Output Summaries
# -----------------------------------------------------------------------------


def strip_ansi(text: str) -> str:
    """Remove terminal control sequences (colors, cursor movement)."""
    return _ANSI_RE.sub("", text)


def shorten_output(
    text: str,
    *,
    max_lines: int = MAX_OUTPUT_LINES,
    max_chars: int = MAX_OUTPUT_CHARS,
) -> str:
    """Trim ``text`` to ``max_lines`` lines, then to ``max_chars`` characters.

    Each cut appends an explicit marker saying how much was dropped.
    """
    if not text:
        return ""
    text = text.strip()
    lines = text.split("\n")
    if len(lines) > max_lines:
        text = "\n".join(lines[:max_lines]) + f"\n... ({len(lines) - max_lines} more lines truncated)"
    if len(text) > max_chars:
        text = text[:max_chars] + f"\n... ({len(text) - max_chars} more characters truncated)"
    return text


def _render_result_data(data: Mapping[str, Any], *, max_lines: int, max_chars: int) -> str | None:
    for mime in ("image/png", "image/jpeg"):
        if data.get(mime):
            return f"<{mime}: base64 data truncated>"
    for mime in data:
        if mime.startswith("image/"):
            return f"<{mime}: binary data truncated>"
    for mime in _TEXT_MIME_PRIORITY:
        value = data.get(mime)
        if value is None or value == "":
            continue
        if mime == "application/json" and not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False)
        return shorten_output(str(value), max_lines=max_lines, max_chars=max_chars)
    for mime in data:
        return f"<{mime}: data omitted>"
    return None


def _render_error(event: ErrorOutput, *, max_lines: int, max_chars: int, max_traceback_lines: int) -> str:
    header = strip_ansi(f"{event.ename}: {event.evalue}")
    traceback_lines: list[str] = []
    for entry in event.traceback:
        traceback_lines.extend(line for line in strip_ansi(entry).split("\n") if line.strip())
    body = "\n".join([header, *traceback_lines[:max_traceback_lines]])
    return shorten_output(body, max_lines=max_lines, max_chars=max_chars)


def render_output_event(
    event: OutputEvent,
    *,
    max_lines: int = MAX_OUTPUT_LINES,
    max_chars: int = MAX_OUTPUT_CHARS,
    max_traceback_lines: int = MAX_TRACEBACK_LINES,
) -> str | None:
    """Render one sandbox output event as bounded text, or ``None`` to skip it."""
    if isinstance(event, StreamOutput):
        return shorten_output(strip_ansi(event.text), max_lines=max_lines, max_chars=max_chars)
    if isinstance(event, ResultOutput):
        return _render_result_data(event.data, max_lines=max_lines, max_chars=max_chars)
    if isinstance(event, ErrorOutput):
        return _render_error(
            event,
            max_lines=max_lines,
            max_chars=max_chars,
            max_traceback_lines=max_traceback_lines,
        )
    LOGGER.debug("Skipping unknown output event %r", event)
    return None


def summarize_outcome(
    outcome: ExecutionOutcome,
    *,
    max_lines: int = MAX_OUTPUT_LINES,
    max_chars: int = MAX_OUTPUT_CHARS,
    max_traceback_lines: int = MAX_TRACEBACK_LINES,
) -> str:
    """Join the rendered output events of ``outcome`` into the tool result text."""
    parts: list[str] = []
    for event in outcome.outputs:
        rendered = render_output_event(
            event,
            max_lines=max_lines,
            max_chars=max_chars,
            max_traceback_lines=max_traceback_lines,
        )
        if rendered:
            parts.append(rendered)
    output = "\n".join(parts).strip()
    if output:
        return output
    if outcome.success:
        return NO_OUTPUT_MESSAGE
    return outcome.error or "Unknown error"


def _code_echo_lines(code: str) -> Iterable[str]:
    for number, line in enumerate(code.split("\n")):
        if number == 0:
            yield f">>> {line}"
        elif line.strip():
            yield f"... {line}"


# -----------------------------------------------------------------------------
# Tool Invoker
# -----------------------------------------------------------------------------


class ToolInvoker:
    """Executes ``executeCode`` tool calls against a sandbox.

    Example:
        >>> invoker = ToolInvoker(sandbox, progress=channel)
        >>> result = await invoker.invoke("executeCode", '{"code": "print(1)"}')
        >>> result.output
        '1'
    """

    def __init__(
        self,
        sandbox: Sandbox,
        *,
        progress: ProgressChannel | None = None,
        max_lines: int = MAX_OUTPUT_LINES,
        max_chars: int = MAX_OUTPUT_CHARS,
        max_traceback_lines: int = MAX_TRACEBACK_LINES,
    ) -> None:
        """Initialize the invoker.

        Args:
            sandbox: Code-execution sandbox shared with the rest of the agent.
            progress: Channel receiving human-readable notifications.
            max_lines: Line cap applied to each output event.
            max_chars: Character cap applied to each output event.
            max_traceback_lines: Traceback lines kept per error event.
        """
        self._sandbox = sandbox
        self._progress = progress or ProgressChannel()
        self._max_lines = max_lines
        self._max_chars = max_chars
        self._max_traceback_lines = max_traceback_lines

    @property
    def sandbox(self) -> Sandbox:
        return self._sandbox

    async def invoke(self, name: str, arguments_json: str) -> ToolResult:
        """Run one tool call and summarize its outcome.

        Never raises for tool-level failures; the failure text becomes the
        result output with ``success=False``.

        Args:
            name: Tool name requested by the model.
            arguments_json: Raw JSON arguments from the model.

        Returns:
            The bounded tool result.
        """
        try:
            code, explanation = self._parse_call(name, arguments_json)
        except MalformedToolCall as exc:
            output = f"{type(exc).__name__}: {exc.message}"
            LOGGER.warning("Rejected tool call %r: %s", name, exc.message)
            self._progress.emit(output, ProgressKind.ERROR)
            return ToolResult(success=False, output=output)

        try:
            return await self.execute_code(code, explanation)
        except ToolExecutionError as exc:
            output = f"Execution error: {exc.message}"
            self._progress.emit(output, ProgressKind.ERROR)
            return ToolResult(success=False, output=output)

    async def execute_code(self, code: str, explanation: str | None = None) -> ToolResult:
        """Run ``code`` in the sandbox and summarize the outcome.

        Raises:
            ToolExecutionError: If the sandbox itself failed (not the code).
        """
        self._announce(code, explanation)
        start_time = time.perf_counter()
        try:
            outcome = await self._sandbox.execute(code)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            message = str(exc) or type(exc).__name__
            LOGGER.warning("Sandbox execution failed after %.1fms: %s", duration_ms, message)
            raise ToolExecutionError(message, tool_name=EXECUTE_CODE_TOOL_NAME, cause=exc) from exc

        duration_ms = (time.perf_counter() - start_time) * 1000
        output = summarize_outcome(
            outcome,
            max_lines=self._max_lines,
            max_chars=self._max_chars,
            max_traceback_lines=self._max_traceback_lines,
        )
        LOGGER.debug(
            "Executed code in %.1fms (success=%s, %d output events)",
            duration_ms,
            outcome.success,
            len(outcome.outputs),
        )
        return ToolResult(success=outcome.success, output=output, outcome=outcome)

    def _parse_call(self, name: str, arguments_json: str) -> tuple[str, str | None]:
        if name != EXECUTE_CODE_TOOL_NAME:
            raise UnsupportedTool(name)
        arguments = parse_tool_arguments(arguments_json)
        code = arguments.get("code")
        if not isinstance(code, str) or not code.strip():
            raise InvalidArguments("Missing required string argument 'code'")
        explanation = arguments.get("explanation")
        if explanation is not None and not isinstance(explanation, str):
            explanation = str(explanation)
        return code, explanation

    def _announce(self, code: str, explanation: str | None) -> None:
        emit = self._progress.emit
        if explanation:
            emit("")
            emit(f"💡 {explanation}", ProgressKind.INFO)
        emit("")
        emit(f"🔧 Tool ({EXECUTE_CODE_TOOL_NAME}):", ProgressKind.EXECUTION)
        for line in _code_echo_lines(code):
            emit(line, ProgressKind.INFO)
        emit("")
