"""Shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    """A controllable clock; call it to read the time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()
