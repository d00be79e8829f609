"""Reasoning-loop orchestration: accumulation, tools, loop control, and jobs."""

from .accumulator import PartialMessage, accumulate, accumulate_all, merge_deltas
from .conversation import ConversationStore
from .errors import (
    AccumulationDefect,
    ErrorCode,
    InvalidArguments,
    JobFailedError,
    KernelAgentError,
    LoopBusyError,
    MalformedToolCall,
    SandboxUnavailableError,
    ToolExecutionError,
    TransportError,
    UnsupportedTool,
)
from .jobs import (
    ConversationRequest,
    ExecutionRequest,
    Job,
    JobDispatcher,
    JobKind,
    JobQueue,
    JobStatus,
    LoopJobDispatcher,
)
from .runner import LoopConfig, LoopController, LoopResult, LoopState, ModelClient
from .tool_invoker import ToolInvoker
from .types import Message, PartialDelta, ToolCallFragment, ToolCallRequest, ToolResult

__all__ = [
    # Types
    "Message",
    "PartialDelta",
    "ToolCallFragment",
    "ToolCallRequest",
    "ToolResult",
    # Accumulation
    "PartialMessage",
    "accumulate",
    "accumulate_all",
    "merge_deltas",
    # Loop
    "ConversationStore",
    "LoopConfig",
    "LoopController",
    "LoopResult",
    "LoopState",
    "ModelClient",
    "ToolInvoker",
    # Jobs
    "ConversationRequest",
    "ExecutionRequest",
    "Job",
    "JobDispatcher",
    "JobKind",
    "JobQueue",
    "JobStatus",
    "LoopJobDispatcher",
    # Errors
    "AccumulationDefect",
    "ErrorCode",
    "InvalidArguments",
    "JobFailedError",
    "KernelAgentError",
    "LoopBusyError",
    "MalformedToolCall",
    "SandboxUnavailableError",
    "ToolExecutionError",
    "TransportError",
    "UnsupportedTool",
]
