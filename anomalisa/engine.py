"""
Event recording and bucket-transition orchestration.

Per (project, event) pair the engine is a small state machine:

    UNSEEN -> TRACKING(b0)          first event, nothing to evaluate yet
    TRACKING(b) -> TRACKING(b)      more events in the same hour
    TRACKING(b) -> TRACKING(b')     first event of a later hour: bucket b is
                                    closed, evaluated and folded into stats

A bucket is only closed when a later event for the same pair arrives. If no
further events come, the last bucket is never evaluated.
"""
from __future__ import annotations

import asyncio
import json
import logging
import unicodedata
import weakref
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from . import config
from .bucketing import current_bucket
from .detectors import detect_anomaly, detect_percentage_spike
from .errors import InvalidInput, StoreUnavailable
from .schemas import Anomaly, Metric
from .stats import RunningStats, empty_stats
from .store import CounterStore

logger = logging.getLogger("anomalisa.engine")

MAX_ID_LENGTH = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_id(name: str, value) -> str:
    """Reject empty, over-long or control-character ids before any store write."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{name} must be a non-empty string")
    if len(value) > MAX_ID_LENGTH:
        raise InvalidInput(f"{name} longer than {MAX_ID_LENGTH} characters")
    if any(unicodedata.category(ch) == "Cc" for ch in value):
        raise InvalidInput(f"{name} contains control characters")
    return value


def _count_key(project_id: str, event_name: str, bucket: str) -> Tuple[str, ...]:
    return ("counts", project_id, event_name, bucket)


def _user_count_key(project_id: str, event_name: str, bucket: str, user_id: str) -> Tuple[str, ...]:
    return ("userCounts", project_id, event_name, bucket, user_id)


def _max_user_count_key(project_id: str, event_name: str, bucket: str) -> Tuple[str, ...]:
    return ("maxUserCount", project_id, event_name, bucket)


def _max_user_key(project_id: str, event_name: str, bucket: str) -> Tuple[str, ...]:
    return ("maxUser", project_id, event_name, bucket)


def _total_stats_key(project_id: str, event_name: str) -> Tuple[str, ...]:
    return ("stats", "total", project_id, event_name)


def _per_user_stats_key(project_id: str, event_name: str) -> Tuple[str, ...]:
    return ("stats", "perUser", project_id, event_name)


def _anomaly_key(anomaly: Anomaly) -> Tuple[str, ...]:
    return (
        "anomalies",
        anomaly.project_id,
        anomaly.detected_at.isoformat(),
        anomaly.metric.value,
        anomaly.bucket,
        anomaly.user_id or "",
    )


def _log_anomaly(anomaly: Anomaly) -> None:
    logger.warning("ANOMALY DETECTED: %s", json.dumps(anomaly.to_wire()))


class AnomalyEngine:
    """
    Records events into the counter store and reports anomalies.

    The store is passed in; the engine holds no other shared state apart from
    the per-pair locks below.

    With `serialize_updates` on, the stats read-modify-write for one
    (project, event) pair runs under an asyncio.Lock for that pair, so two
    events handled by the same process cannot both close the same bucket.
    Separate processes can still race on the stats; that window is accepted.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        count_ttl: int = config.COUNT_TTL_SECONDS,
        anomaly_ttl: int = config.ANOMALY_TTL_SECONDS,
        serialize_updates: bool = config.SERIALIZE_STATS_UPDATES,
    ):
        self.store = store
        self.clock = clock or _utcnow
        self.count_ttl = count_ttl
        self.anomaly_ttl = anomaly_ttl
        self.serialize_updates = serialize_updates
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    async def _get_or_init_stats(self, key: Tuple[str, ...], bucket: str) -> RunningStats:
        raw = await self.store.get_or_init(key, lambda: empty_stats(bucket).to_dict())
        return RunningStats.from_dict(raw)

    async def _store_anomaly(self, anomaly: Anomaly) -> None:
        await self.store.put(_anomaly_key(anomaly), anomaly.to_wire(), ttl=self.anomaly_ttl)

    def _lock_for(self, project_id: str, event_name: str) -> asyncio.Lock:
        # dropped once no caller holds or waits on it
        lock = self._locks.get((project_id, event_name))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(project_id, event_name)] = lock
        return lock

    async def _count_or_zero(self, key: Tuple[str, ...]) -> int:
        value = await self.store.get(key)
        return int(value) if value is not None else 0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_event(self, project_id: str, event_name: str, user_id: str) -> List[Anomaly]:
        """
        Count one event and return the anomalies it surfaced: an immediate
        per-user spike in the open bucket, plus whatever the close of the
        previous bucket produced when this event starts a new one.

        Raises StoreUnavailable if the counters cannot be written. Failures
        after that point only drop the detection for this call.
        """
        validate_id("projectId", project_id)
        validate_id("eventName", event_name)
        validate_id("userId", user_id)

        now = self.clock()
        bucket = current_bucket(now)

        # independent keys, order does not matter
        _, user_count = await asyncio.gather(
            self.store.increment(_count_key(project_id, event_name, bucket), self.count_ttl),
            self.store.increment(_user_count_key(project_id, event_name, bucket, user_id), self.count_ttl),
        )

        # peak and its holder move together
        await self.store.set_if_greater(
            _max_user_count_key(project_id, event_name, bucket),
            user_count,
            self.count_ttl,
            holder_key=_max_user_key(project_id, event_name, bucket),
            holder=user_id,
        )

        if self.serialize_updates:
            async with self._lock_for(project_id, event_name):
                return await self._evaluate(project_id, event_name, user_id, user_count, bucket, now)
        return await self._evaluate(project_id, event_name, user_id, user_count, bucket, now)

    async def _evaluate(
        self,
        project_id: str,
        event_name: str,
        user_id: str,
        user_count: int,
        bucket: str,
        now: datetime,
    ) -> List[Anomaly]:
        anomalies: List[Anomaly] = []

        try:
            user_spike = await self._check_user_spike(project_id, event_name, user_id, user_count, bucket, now)
        except StoreUnavailable:
            logger.exception("user spike check aborted for %s/%s", project_id, event_name)
            user_spike = None
        if user_spike is not None:
            anomalies.append(user_spike)

        try:
            total_stats = await self._get_or_init_stats(_total_stats_key(project_id, event_name), bucket)
            if total_stats.last_bucket < bucket:
                anomalies.extend(
                    await self._handle_bucket_transition(total_stats, project_id, event_name, bucket, now)
                )
        except StoreUnavailable:
            logger.exception("bucket close aborted for %s/%s", project_id, event_name)

        return anomalies

    async def _check_user_spike(
        self,
        project_id: str,
        event_name: str,
        user_id: str,
        user_count: int,
        bucket: str,
        now: datetime,
    ) -> Optional[Anomaly]:
        per_user_stats = await self._get_or_init_stats(_per_user_stats_key(project_id, event_name), bucket)
        anomaly = detect_anomaly(
            per_user_stats,
            user_count,
            project_id,
            event_name,
            Metric.USER_SPIKE,
            user_id,
            bucket=bucket,
            detected_at=now,
        )
        if anomaly is not None:
            await self._store_anomaly(anomaly)
            _log_anomaly(anomaly)
        return anomaly

    async def _handle_bucket_transition(
        self,
        stats: RunningStats,
        project_id: str,
        event_name: str,
        bucket: str,
        now: datetime,
    ) -> List[Anomaly]:
        closed = stats.last_bucket

        prev_total = await self._count_or_zero(_count_key(project_id, event_name, closed))
        prev_max_user = await self._count_or_zero(_max_user_count_key(project_id, event_name, closed))
        peak_user = await self.store.get(_max_user_key(project_id, event_name, closed))

        per_user_key = _per_user_stats_key(project_id, event_name)
        per_user_stats = await self._get_or_init_stats(per_user_key, bucket)

        candidates = [
            detect_anomaly(
                stats, prev_total, project_id, event_name, Metric.TOTAL_COUNT,
                bucket=closed, detected_at=now,
            ),
            detect_percentage_spike(
                stats, prev_total, project_id, event_name,
                bucket=closed, detected_at=now,
            ),
            detect_anomaly(
                per_user_stats, prev_max_user, project_id, event_name, Metric.USER_SPIKE,
                peak_user or None, bucket=closed, detected_at=now,
            ),
        ]
        anomalies = [a for a in candidates if a is not None]

        await asyncio.gather(
            self.store.put(_total_stats_key(project_id, event_name), stats.advance(prev_total, bucket).to_dict()),
            self.store.put(per_user_key, per_user_stats.advance(prev_max_user, bucket).to_dict()),
            *(self._store_anomaly(a) for a in anomalies),
        )

        logger.debug(
            "closed bucket %s for %s/%s total=%d max_user=%d",
            closed, project_id, event_name, prev_total, prev_max_user,
        )
        for a in anomalies:
            _log_anomaly(a)

        return anomalies

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_anomalies(self, project_id: str) -> List[Anomaly]:
        validate_id("projectId", project_id)
        entries = await self.store.list_by_prefix(("anomalies", project_id))
        return [Anomaly.model_validate(value) for _, value in entries]

    async def get_event_counts(self, project_id: str) -> Dict[str, List[Dict[str, object]]]:
        validate_id("projectId", project_id)
        entries = await self.store.list_by_prefix(("counts", project_id))
        events: Dict[str, List[Dict[str, object]]] = {}
        for key, value in entries:
            event_name, bucket = key[2], key[3]
            events.setdefault(event_name, []).append({"bucket": bucket, "count": int(value)})
        for rows in events.values():
            rows.sort(key=lambda r: r["bucket"])
        return events
