import math
import statistics

import pytest

from anomalisa.stats import RunningStats, empty_stats, std_dev, update_stats

from .conftest import build_stats


def test_single_value_gives_its_mean():
    stats = update_stats(empty_stats("2026-01-01T00"), 10)
    assert stats.n == 1
    assert stats.mean == 10
    assert stats.m2 == 0


def test_multiple_values_mean():
    stats = build_stats([10, 20, 30])
    assert stats.n == 3
    assert stats.mean == pytest.approx(20)
    assert std_dev(stats) == pytest.approx(10)


def test_update_keeps_last_bucket():
    stats = update_stats(empty_stats("2026-01-01T05"), 42)
    assert stats.last_bucket == "2026-01-01T05"


def test_empty_stats_are_zeroed():
    stats = empty_stats("x")
    assert (stats.n, stats.mean, stats.m2) == (0, 0.0, 0.0)


@pytest.mark.parametrize("stats", [
    empty_stats("x"),
    update_stats(empty_stats("x"), 10),
    RunningStats(mean=5.0, m2=123.0, n=1, last_bucket="x"),
])
def test_std_dev_zero_below_two_points(stats):
    assert std_dev(stats) == 0


def test_std_dev_known_values():
    assert std_dev(build_stats([2, 4, 4, 4, 5, 5, 7, 9])) == pytest.approx(2.1381, abs=0.001)


def test_std_dev_identical_values():
    assert std_dev(build_stats([5, 5, 5, 5])) == pytest.approx(0, abs=0.001)


@pytest.mark.parametrize("values", [
    [3, 7, 11, 5, 9, 2, 14, 6],
    [1, 1],
    [1e9 + 1, 1e9 + 2, 1e9 + 3, 1e9 + 4],
    [0, 0, 0, 1000],
])
def test_incremental_matches_batch(values):
    stats = build_stats(values)
    assert stats.mean == pytest.approx(statistics.mean(values), rel=1e-9)
    assert std_dev(stats) == pytest.approx(statistics.stdev(values), rel=1e-6)


def test_advance_folds_value_and_moves_bucket():
    stats = build_stats([1, 2], last_bucket="2026-01-01T00")
    advanced = stats.advance(3, "2026-01-01T05")
    assert advanced.n == 3
    assert advanced.mean == pytest.approx(2)
    assert advanced.last_bucket == "2026-01-01T05"
    # original untouched
    assert stats.n == 2


def test_dict_round_trip_uses_wire_names():
    stats = build_stats([4, 8], last_bucket="2026-03-01T10")
    raw = stats.to_dict()
    assert set(raw) == {"mean", "m2", "n", "lastBucket"}
    assert RunningStats.from_dict(raw) == stats


def test_std_dev_tolerates_tiny_negative_m2():
    stats = RunningStats(mean=1.0, m2=-1e-12, n=3, last_bucket="x")
    assert std_dev(stats) == 0
    assert not math.isnan(std_dev(stats))
