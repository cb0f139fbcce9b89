from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from approval_gateway.engine import PolicyEngine


class FakeClock:
    """Callable clock; starts at noon so the quiet-hours term stays off."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 12, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_engine(clock):
    def _make(workspace: str = "/workspace", **settings) -> PolicyEngine:
        return PolicyEngine(settings=settings, workspace_dir=workspace, clock=clock)

    return _make
