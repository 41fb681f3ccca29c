"""Pytest configuration and fixtures for flowguard tests."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from flowguard import alerts, config, event_log


@pytest.fixture(autouse=True)
def isolate_side_effects(tmp_path, monkeypatch):
    """Send events and alerts to tmp_path and keep Slack out of tests."""
    monkeypatch.setattr(event_log, "EVENTS_FILE", tmp_path / "events.jsonl")
    monkeypatch.setattr(alerts, "ALERTS_DIR", tmp_path / "alerts")
    monkeypatch.setattr(alerts, "CONSOLE_ENABLED", False)
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("FLOWGUARD_CONFIG", raising=False)
    monkeypatch.delenv("FLOWGUARD_REDIS_PREFIX", raising=False)
    config._cached_settings = None
    yield
    config._cached_settings = None


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
