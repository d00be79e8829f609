"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from kernelagent.services.telemetry import InMemoryProgressSink, ProgressChannel


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep developer settings and log directories out of the tests."""
    for name in list(os.environ):
        if name.startswith("KERNELAGENT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KERNELAGENT_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def progress_sink() -> InMemoryProgressSink:
    return InMemoryProgressSink(capacity=1000)


@pytest.fixture
def progress(progress_sink: InMemoryProgressSink) -> ProgressChannel:
    channel = ProgressChannel()
    channel.subscribe(progress_sink)
    return channel
