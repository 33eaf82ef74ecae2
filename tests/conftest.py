"""Shared fixtures for exit gate tests."""

from datetime import datetime, timedelta, timezone

import pytest

from exit_gate.store import FileSignalStore, MemorySignalStore

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemorySignalStore()


@pytest.fixture
def file_store(tmp_path):
    return FileSignalStore(tmp_path)
