"""Tests for prompt templates and the tool schema."""

from __future__ import annotations

from kernelagent.ai.prompts import EXECUTE_CODE_TOOL_NAME, SYSTEM_PROMPT, step_budget_reminder, tool_schemas


def test_tool_schema_requires_code_and_explanation() -> None:
    (schema,) = tool_schemas()

    function = schema["function"]
    assert schema["type"] == "function"
    assert function["name"] == EXECUTE_CODE_TOOL_NAME == "executeCode"
    assert function["parameters"]["required"] == ["code", "explanation"]


def test_system_prompt_mentions_the_tool() -> None:
    assert "executeCode" in SYSTEM_PROMPT


def test_budget_reminder_counts_remaining_steps() -> None:
    assert "only 2 steps remain" in step_budget_reminder(3, 5)
    assert "only 1 step remain" in step_budget_reminder(4, 5)
    assert "used all 5 allowed steps" in step_budget_reminder(5, 5)
