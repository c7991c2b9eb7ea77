"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from studyflow.events import EventBus

from tests.helpers import FakeScheduler


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in (
        "STUDYFLOW_BASE_URL",
        "STUDYFLOW_ACCESS_TOKEN",
        "STUDYFLOW_DEBUG_LOGGING",
        "STUDYFLOW_REQUEST_TIMEOUT",
        "STUDYFLOW_MAX_RETRIES",
        "STUDYFLOW_SETTINGS_PATH",
        "STUDYFLOW_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STUDYFLOW_LOG_DIR", str(tmp_path / "logs"))
