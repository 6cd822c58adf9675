from datetime import datetime, timedelta, timezone

import pytest

from anomalisa.engine import AnomalyEngine
from anomalisa.stats import empty_stats, update_stats
from anomalisa.store import MemoryCounterStore

START = datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0, minutes: float = 0):
        self.now += timedelta(hours=hours, minutes=minutes)


def build_stats(values, last_bucket="2026-01-01T00"):
    stats = empty_stats(last_bucket)
    for v in values:
        stats = update_stats(stats, v)
    return stats


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryCounterStore()


@pytest.fixture
def engine(store, clock):
    return AnomalyEngine(store, clock=clock)
