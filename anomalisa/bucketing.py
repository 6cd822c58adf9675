from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

BUCKET_FORMAT = "%Y-%m-%dT%H"


def _as_utc(now: datetime) -> datetime:
    # naive datetimes are treated as UTC
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def current_bucket(now: Optional[datetime] = None) -> str:
    """
    Hour bucket for `now` (defaults to the wall clock), e.g. "2026-01-01T05".
    String order of buckets is chronological order.
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    return now.strftime(BUCKET_FORMAT)


def bucket_start(bucket: str) -> datetime:
    return datetime.strptime(bucket, BUCKET_FORMAT).replace(tzinfo=timezone.utc)


def shift_bucket(bucket: str, hours: int) -> str:
    return current_bucket(bucket_start(bucket) + timedelta(hours=hours))
