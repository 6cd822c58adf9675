from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Metric(str, Enum):
    TOTAL_COUNT = "totalCount"
    USER_SPIKE = "userSpike"
    PERCENTAGE_SPIKE = "percentageSpike"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Anomaly(CamelModel):
    """
    One detection. Immutable once built.

    For metric == percentageSpike, `z_score` holds the percentage change
    (count - mean) / mean instead of a z-score. The field is shared so every
    metric serializes to the same shape.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    project_id: str
    event_name: str
    bucket: str
    expected: float
    actual: int
    z_score: float
    detected_at: datetime
    metric: Metric
    # omitted from the wire form when absent, never null
    user_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class BucketCount(CamelModel):
    bucket: str
    count: int


class EventIn(CamelModel):
    token: str
    user_id: str
    event_name: str
    properties: Optional[Dict[str, Any]] = None


class EventOut(BaseModel):
    status: str = "ok"
    anomalies: List[Dict[str, Any]]
