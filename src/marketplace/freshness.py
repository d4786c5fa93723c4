from __future__ import annotations

from datetime import datetime, timedelta, timezone

from marketplace.storage import VehicleStore
from vehicles.freshness import CacheCheck, evaluate_freshness
from vehicles.registration import normalize_vrm


async def check_cache(
    store: VehicleStore,
    vrm: str,
    *,
    now: datetime | None = None,
    freshness: timedelta = timedelta(days=30),
) -> CacheCheck:
    """Read the current record for ``vrm`` and decide whether it is still fresh."""
    record = await store.get_vehicle_record(normalize_vrm(vrm))
    return evaluate_freshness(record, now or datetime.now(timezone.utc), freshness)
