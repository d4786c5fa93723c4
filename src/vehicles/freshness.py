from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from vehicles.data_models import VehicleRecord


@dataclass(frozen=True)
class CacheCheck:
    hit: bool
    record: Optional[VehicleRecord]
    age_ms: Optional[int]


def evaluate_freshness(record: Optional[VehicleRecord], now: datetime, window: timedelta) -> CacheCheck:
    if record is None or record.checked_at is None:
        return CacheCheck(hit=False, record=record, age_ms=None)
    age = now - record.checked_at
    age_ms = int(age.total_seconds() * 1000)
    return CacheCheck(hit=age < window, record=record, age_ms=age_ms)
