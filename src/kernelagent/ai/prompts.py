"""Prompt templates and the tool schema exposed to the model."""

from __future__ import annotations

from typing import Any, Mapping

EXECUTE_CODE_TOOL_NAME = "executeCode"

SYSTEM_PROMPT = """You are a helpful AI coding assistant with access to a Python kernel.

You can execute Python code to help users with their tasks. When you need to run Python code, you must initialize a tool call to the `executeCode` function.

Guidelines:
- Write clean, well-documented Python code
- Explain what the code does before executing it
- Handle errors gracefully and explain what went wrong
- Use the Python kernel's available libraries (NumPy, Matplotlib, etc.)
- For data visualization, use matplotlib with inline backend
- Keep code concise and focused on the task

The Python kernel is initialized and ready. You can execute code immediately.
Tool results are summarized: long outputs are truncated and images are replaced by placeholders.
"""

EXECUTE_CODE_TOOL: Mapping[str, Any] = {
    "type": "function",
    "function": {
        "name": EXECUTE_CODE_TOOL_NAME,
        "description": (
            "Execute Python code in the Python kernel. Use this to run Python code, perform "
            "calculations, create visualizations, or process data."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "The Python code to execute. Can be multiple lines.",
                },
                "explanation": {
                    "type": "string",
                    "description": "A brief explanation of what this code does and why you are running it.",
                },
            },
            "required": ["code", "explanation"],
        },
    },
}


def tool_schemas() -> tuple[Mapping[str, Any], ...]:
    """Return the tool definitions sent with every completion request."""
    return (EXECUTE_CODE_TOOL,)


def step_budget_reminder(steps_taken: int, max_steps: int) -> str:
    """Build the nudge appended when the step budget is nearly spent."""
    remaining = max(max_steps - steps_taken, 0)
    if remaining == 0:
        return (
            f"You have used all {max_steps} allowed steps. "
            "Stop calling tools and summarize your findings for the user now."
        )
    plural = "step" if remaining == 1 else "steps"
    return (
        f"Reminder: you have used {steps_taken} of {max_steps} steps and only {remaining} {plural} "
        "remain. Wrap up your work and give the user a final answer instead of starting new tasks."
    )


__all__ = [
    "EXECUTE_CODE_TOOL",
    "EXECUTE_CODE_TOOL_NAME",
    "SYSTEM_PROMPT",
    "step_budget_reminder",
    "tool_schemas",
]
