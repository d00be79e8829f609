"""Standardized error types for the reasoning loop and job queue.

Errors carry a machine-readable code plus a human-readable message so they can
be rendered into tool results, job records, and progress notifications with
the same shape.
"""

from __future__ import annotations

from typing import Any, Sequence

__all__ = [
    "ErrorCode",
    "KernelAgentError",
    "TransportError",
    "AccumulationDefect",
    "MalformedToolCall",
    "UnsupportedTool",
    "InvalidArguments",
    "ToolExecutionError",
    "SandboxUnavailableError",
    "LoopBusyError",
    "JobFailedError",
]


class ErrorCode:
    """Constants for error codes surfaced in tool results and job records."""

    TRANSPORT = "transport_error"
    ACCUMULATION_DEFECT = "accumulation_defect"
    UNSUPPORTED_TOOL = "unsupported_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_EXECUTION = "tool_execution_error"
    SANDBOX_UNAVAILABLE = "sandbox_unavailable"
    LOOP_BUSY = "loop_busy"
    JOB_FAILED = "job_failed"


class KernelAgentError(Exception):
    """Base exception class for all kernel agent errors."""

    error_code: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON payloads."""
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


class TransportError(KernelAgentError):
    """The streamed completion failed or was rejected by the provider."""

    error_code = ErrorCode.TRANSPORT


class AccumulationDefect(KernelAgentError):
    """Streamed tool-call fragments left a gap in the index sequence."""

    error_code = ErrorCode.ACCUMULATION_DEFECT

    def __init__(self, missing: Sequence[int] = (), *, message: str | None = None) -> None:
        self.missing = tuple(missing)
        if message is None:
            indices = ", ".join(str(index) for index in self.missing)
            message = f"Tool call fragments missing for index(es): {indices}"
        super().__init__(message, missing=list(self.missing))


class MalformedToolCall(KernelAgentError):
    """Base for tool calls the invoker cannot run as requested."""


class UnsupportedTool(MalformedToolCall):
    """The model asked for a tool that does not exist."""

    error_code = ErrorCode.UNSUPPORTED_TOOL

    def __init__(self, name: str) -> None:
        self.tool_name = name
        super().__init__(f"Tool '{name}' is not supported", tool_name=name)


class InvalidArguments(MalformedToolCall):
    """Tool arguments were not valid JSON or missed a required field."""

    error_code = ErrorCode.INVALID_ARGUMENTS


class ToolExecutionError(KernelAgentError):
    """Raised when the sandbox fails to execute code."""

    error_code = ErrorCode.TOOL_EXECUTION

    def __init__(self, message: str, tool_name: str = "", cause: Exception | None = None) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(message)


class SandboxUnavailableError(KernelAgentError):
    """The sandbox reported that it is not ready to execute code."""

    error_code = ErrorCode.SANDBOX_UNAVAILABLE


class LoopBusyError(KernelAgentError):
    """A reasoning loop is already running on this controller."""

    error_code = ErrorCode.LOOP_BUSY


class JobFailedError(KernelAgentError):
    """A queued job awaited by a synchronous caller ended in ``failed``."""

    error_code = ErrorCode.JOB_FAILED

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        super().__init__(message, job_id=job_id)
