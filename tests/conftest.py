"""Shared test fixtures for the SMS orchestrator test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest0000000000000000000000000000")
    os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-twilio-token-123")
    os.environ.setdefault("TWILIO_FROM_NUMBER", "+447700900999")
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-456")


class FakeClock:
    """Manually advanced epoch clock.

    Starts on Tuesday 12 March 2024, 11:00 Europe/London, inside business hours.
    """

    def __init__(self, start: float = 1_710_241_200.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    from sms_orchestrator.services.store import MemoryStore

    return MemoryStore(clock=clock)


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
