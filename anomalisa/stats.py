from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Dict


@dataclass(frozen=True)
class RunningStats:
    """
    Welford accumulator over one series of per-bucket values.

      - mean: running mean
      - m2: sum of squared deviations from the mean
      - n: number of observations folded in
      - last_bucket: bucket the series was last advanced to
    """
    mean: float
    m2: float
    n: int
    last_bucket: str

    def to_dict(self) -> Dict[str, Any]:
        return {"mean": self.mean, "m2": self.m2, "n": self.n, "lastBucket": self.last_bucket}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RunningStats":
        return cls(
            mean=float(raw.get("mean", 0.0)),
            m2=float(raw.get("m2", 0.0)),
            n=int(raw.get("n", 0)),
            last_bucket=str(raw.get("lastBucket", "")),
        )

    def advance(self, value: float, bucket: str) -> "RunningStats":
        """Fold in a closed bucket's final value and move to `bucket`."""
        return replace(update_stats(self, value), last_bucket=bucket)


def empty_stats(last_bucket: str) -> RunningStats:
    return RunningStats(mean=0.0, m2=0.0, n=0, last_bucket=last_bucket)


def update_stats(stats: RunningStats, value: float) -> RunningStats:
    n = stats.n + 1
    delta = value - stats.mean
    mean = stats.mean + delta / n
    delta2 = value - mean
    m2 = stats.m2 + delta * delta2
    return RunningStats(mean=mean, m2=m2, n=n, last_bucket=stats.last_bucket)


def std_dev(stats: RunningStats) -> float:
    # sample standard deviation, Bessel-corrected
    if stats.n < 2:
        return 0.0
    return math.sqrt(max(stats.m2, 0.0) / (stats.n - 1))
