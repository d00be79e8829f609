"""Tests for sandbox execution outcomes."""

from __future__ import annotations

from kernelagent.sandbox import ErrorOutput, ExecutionOutcome, ResultOutput, Sandbox, StreamOutput

from tests.helpers import FakeSandbox


def test_from_events_parses_jupyter_messages() -> None:
    outcome = ExecutionOutcome.from_events(
        [
            {"type": "stream", "data": {"name": "stdout", "text": "hello\n"}},
            {"type": "stream", "data": {"name": "stderr", "text": "warn\n"}},
            {"type": "display_data", "data": {"data": {"image/png": "iVBOR"}}},
            {"type": "status", "data": {"execution_state": "idle"}},
        ]
    )

    assert outcome.success is True
    assert outcome.outputs == (
        StreamOutput(text="hello\n"),
        StreamOutput(text="warn\n", name="stderr"),
        ResultOutput(data={"image/png": "iVBOR"}, kind="display_data"),
    )
    assert outcome.stdout_text() == "hello\n"


def test_error_event_marks_failure() -> None:
    outcome = ExecutionOutcome.from_events(
        [{"type": "error", "data": {"ename": "ZeroDivisionError", "evalue": "division by zero", "traceback": ["tb"]}}]
    )

    assert outcome.success is False
    assert outcome.outputs == (ErrorOutput(ename="ZeroDivisionError", evalue="division by zero", traceback=("tb",)),)


def test_top_level_error_marks_failure() -> None:
    outcome = ExecutionOutcome.from_events([], error="kernel restarting")

    assert outcome.success is False
    assert outcome.to_dict() == {"success": False, "outputs": [], "error": "kernel restarting"}


def test_to_dict_serializes_events() -> None:
    outcome = ExecutionOutcome(success=True, outputs=[StreamOutput(text="1\n")])

    assert outcome.to_dict() == {
        "success": True,
        "outputs": [{"kind": "stream", "name": "stdout", "text": "1\n"}],
    }


def test_fake_sandbox_satisfies_protocol() -> None:
    assert isinstance(FakeSandbox(), Sandbox)
