from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

from .schemas import Anomaly, Metric
from .stats import RunningStats, std_dev

MIN_DATA_POINTS = 3          # cold start: no verdict below this many buckets
Z_SCORE_THRESHOLD = 2.0
PERCENTAGE_THRESHOLD = 1.0   # more than double the mean
MIN_ABSOLUTE_DIFF = 3        # ignore spikes on near-zero baselines


def round2(x: float) -> float:
    # half-up, so 0.125 -> 0.13
    return math.floor(x * 100 + 0.5) / 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def detect_anomaly(
    stats: RunningStats,
    count: int,
    project_id: str,
    event_name: str,
    metric: Metric,
    user_id: Optional[str] = None,
    *,
    bucket: Optional[str] = None,
    detected_at: Optional[datetime] = None,
) -> Optional[Anomaly]:
    """
    Z-score check of `count` against the series in `stats`.
    Returns None on cold start or when |z| <= 2.
    """
    if stats.n < MIN_DATA_POINTS:
        return None

    sd = std_dev(stats)
    z = abs(count - stats.mean) / sd if sd > 0 else 0.0
    if z <= Z_SCORE_THRESHOLD:
        return None

    return Anomaly(
        project_id=project_id,
        event_name=event_name,
        bucket=bucket or stats.last_bucket,
        expected=round2(stats.mean),
        actual=count,
        z_score=round2(z),
        detected_at=detected_at or _now(),
        metric=metric,
        user_id=user_id or None,
    )


def detect_percentage_spike(
    stats: RunningStats,
    count: int,
    project_id: str,
    event_name: str,
    *,
    bucket: Optional[str] = None,
    detected_at: Optional[datetime] = None,
) -> Optional[Anomaly]:
    """
    Flags a total more than double the mean, by at least MIN_ABSOLUTE_DIFF.
    The percentage change is reported in the `z_score` field.
    """
    if stats.n < MIN_DATA_POINTS or stats.mean <= 0:
        return None

    pct_change = (count - stats.mean) / stats.mean
    if pct_change <= PERCENTAGE_THRESHOLD or count - stats.mean < MIN_ABSOLUTE_DIFF:
        return None

    return Anomaly(
        project_id=project_id,
        event_name=event_name,
        bucket=bucket or stats.last_bucket,
        expected=round2(stats.mean),
        actual=count,
        z_score=round2(pct_change),
        detected_at=detected_at or _now(),
        metric=Metric.PERCENTAGE_SPIKE,
    )
