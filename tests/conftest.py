from unittest.mock import MagicMock

import pytest

from civicgate.security.audit import SecurityAudit


class FakeClock:
    """Manually advanced clock for window arithmetic."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def audit():
    """SecurityAudit that never persists; calls are observable through the mock."""
    sink = SecurityAudit(persist=False)
    sink.log_security_event = MagicMock(wraps=sink.log_security_event)
    return sink
