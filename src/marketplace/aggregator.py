from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from pydantic import TypeAdapter
from sqlalchemy.exc import SQLAlchemyError

from marketplace.freshness import check_cache
from marketplace.logging_config import current_vrm
from marketplace.providers import ProviderSet, VehicleDataProvider
from marketplace.storage import RefreshLock, VehicleStore
from vehicles.config import LookupConfig
from vehicles.data_models import HistorySnapshot, MotTest, SpecsSnapshot, ValuationSnapshot, VehicleRecord
from vehicles.errors import PersistenceError, ProviderTimeoutError
from vehicles.freshness import CacheCheck
from vehicles.ledger import CostLedger, ServiceError
from vehicles.reconciliation import (
    apply_history,
    apply_mot,
    apply_specs,
    apply_valuation,
    finalize_record,
    reconcile_listing,
)
from vehicles.registration import validate_mileage, validate_vrm

logger = logging.getLogger(__name__)

_RECONCILABLE_STATUSES = frozenset({"pending", "active"})


@dataclass
class LookupData:
    history: Optional[HistorySnapshot] = None
    specs: Optional[SpecsSnapshot] = None
    mot: Optional[list[MotTest]] = None
    valuation: Optional[ValuationSnapshot] = None


@dataclass
class LookupResult:
    """Outcome of one aggregation.

    ``success`` only says the orchestration ran; individual provider or
    persistence failures are listed in ``errors`` and callers decide whether
    to retry, degrade or flag the listing.
    """

    success: bool
    vrm: str
    cached: bool = False
    record: Optional[VehicleRecord] = None
    data: LookupData = field(default_factory=LookupData)
    errors: list[ServiceError] = field(default_factory=list)
    api_calls: int = 0
    total_cost: Decimal = Decimal("0")
    cache_age_ms: Optional[int] = None


_result_adapter = TypeAdapter(LookupResult)


def result_to_dict(result: LookupResult) -> dict[str, Any]:
    return _result_adapter.dump_python(result, mode="json")


class VehicleDataAggregator:
    """Fetch, merge and persist everything known about one registration mark."""

    def __init__(
        self,
        store: VehicleStore,
        providers: ProviderSet,
        config: LookupConfig | None = None,
        *,
        lock: RefreshLock | None = None,
        lock_ttl_seconds: int = 60,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.providers = providers
        self.config = config or LookupConfig()
        self.lock = lock or RefreshLock()
        self.lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._inflight: dict[str, tuple[asyncio.Task[LookupResult], int]] = {}
        self.stats: Counter[str] = Counter()
        self.spend = Decimal("0")

    @property
    def freshness_window(self) -> timedelta:
        return timedelta(days=self.config.freshness_days)

    async def fetch_complete_vehicle_data(self, vrm: str, mileage: int, force_refresh: bool = False) -> LookupResult:
        normalized = validate_vrm(vrm)
        validate_mileage(mileage)

        key = f"{normalized}:{'refresh' if force_refresh else 'lookup'}"
        inflight = self._inflight.get(key)
        if inflight is not None:
            task, running_mileage = inflight
            if running_mileage != mileage:
                logger.warning(
                    "Joining in-flight lookup for %s started at mileage %d; valuation not recomputed for %d",
                    normalized,
                    running_mileage,
                    mileage,
                )
            else:
                logger.info("Joining in-flight lookup for %s", normalized)
            self.stats["joined"] += 1
            return await asyncio.shield(task)

        task = asyncio.ensure_future(self._run(normalized, mileage, force_refresh))
        self._inflight[key] = (task, mileage)
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _run(self, vrm: str, mileage: int, force_refresh: bool) -> LookupResult:
        token = current_vrm.set(vrm)
        try:
            self.stats["lookups"] += 1
            logger.info("Starting vehicle data fetch (mileage=%d, force_refresh=%s)", mileage, force_refresh)
            if not force_refresh:
                check = await self._check_cache(vrm)
                if check.hit:
                    return await self._serve_cached(vrm, check)

            lock_token: str | None
            try:
                lock_token = await self.lock.acquire_blocking(vrm, self.lock_ttl_seconds)
            except TimeoutError:
                logger.warning("Refresh lock for %s not released in time; refreshing without it", vrm)
                lock_token = None
            try:
                if lock_token is not None and not force_refresh:
                    # another worker may have refreshed while we waited
                    check = await self._check_cache(vrm)
                    if check.hit:
                        return await self._serve_cached(vrm, check)
                return await self._refresh(vrm, mileage)
            finally:
                if lock_token is not None:
                    await self.lock.release(vrm, lock_token)
        finally:
            current_vrm.reset(token)

    async def _check_cache(self, vrm: str) -> CacheCheck:
        check = await check_cache(self.store, vrm, now=self._clock(), freshness=self.freshness_window)
        if check.record is None:
            logger.info("No cached record; making fresh provider calls")
        elif not check.hit:
            logger.info("Cached record is stale (age %.1f days); making fresh provider calls", (check.age_ms or 0) / 86_400_000)
        return check

    async def _serve_cached(self, vrm: str, check: CacheCheck) -> LookupResult:
        self.stats["cache_hits"] += 1
        logger.info("Cache hit (age %.1f hours); no provider calls made", (check.age_ms or 0) / 3_600_000)
        result = LookupResult(success=True, vrm=vrm, cached=True, record=check.record, cache_age_ms=check.age_ms)
        ledger = CostLedger(self.config)
        if check.record is not None:
            await self._reconcile_listings(vrm, check.record, ledger)
        result.errors = ledger.errors
        return result

    async def _call(self, provider: VehicleDataProvider, vrm: str, mileage: int) -> tuple[Any, BaseException | None]:
        timeout = self.config.provider_timeout_seconds
        try:
            value = await asyncio.wait_for(provider.fetch(vrm, mileage), timeout=timeout)
        except asyncio.TimeoutError:
            return None, ProviderTimeoutError(f"{provider.service} call timed out after {timeout:g}s", service=provider.service)
        except Exception as exc:
            return None, exc
        return value, None

    async def _refresh(self, vrm: str, mileage: int) -> LookupResult:
        existing = await self.store.get_vehicle_record(vrm)
        record = copy.deepcopy(existing) if existing is not None else VehicleRecord(vrm=vrm)
        ledger = CostLedger(self.config)
        data = LookupData()

        providers = self.providers.ordered()
        outcomes = await asyncio.gather(*(self._call(p, vrm, mileage) for p in providers))

        # merge order is fixed so "keep the better value" has a stable precedence
        for provider, (value, error) in zip(providers, outcomes):
            service = provider.service
            if error is not None:
                logger.warning("%s call failed: %s", service, error)
                ledger.record_failure(service, error)
                self.stats["provider_failures"] += 1
                continue
            ledger.record_success(service)
            if service == "history":
                apply_history(record, value, self.config)
                data.history = value
            elif service == "specs":
                apply_specs(record, value, self.config)
                data.specs = value
            elif service == "mot":
                apply_mot(record, value, now=self._clock())
                data.mot = value
            elif service == "valuation":
                apply_valuation(record, value)
                data.valuation = value

        self.stats["provider_calls"] += ledger.api_calls
        self.spend += ledger.total_cost
        failed_services = ledger.failed

        stored: Optional[VehicleRecord]
        if ledger.succeeded:
            finalize_record(record, succeeded=ledger.succeeded, failed=failed_services, now=self._clock())
            try:
                record = stored = await self.store.save_vehicle_record(record)
            except (PersistenceError, SQLAlchemyError) as exc:
                logger.warning("Could not persist vehicle record: %s", exc)
                ledger.record_failure("vehicle_record", exc)
                # listings may only reference what is actually stored
                stored = await self._reload(vrm, ledger)
        else:
            logger.warning("Every provider call failed; stored record left untouched")
            record = stored = existing

        if stored is not None:
            await self._reconcile_listings(vrm, stored, ledger)

        logger.info(
            "Vehicle data fetch complete: %d calls, cost %s, errors: %s",
            ledger.api_calls,
            ledger.total_cost,
            ", ".join(e.service for e in ledger.errors) or "none",
        )
        return LookupResult(
            success=True,
            vrm=vrm,
            record=record,
            data=data,
            errors=ledger.errors,
            api_calls=ledger.api_calls,
            total_cost=ledger.total_cost,
        )

    async def _reload(self, vrm: str, ledger: CostLedger) -> Optional[VehicleRecord]:
        try:
            return await self.store.get_vehicle_record(vrm)
        except SQLAlchemyError as exc:
            logger.warning("Could not reload vehicle record; listings left as they were: %s", exc)
            ledger.record_failure("listing", exc)
            return None

    async def _reconcile_listings(self, vrm: str, record: VehicleRecord, ledger: CostLedger) -> None:
        try:
            listings = await self.store.find_listings_by_vrm(vrm)
        except SQLAlchemyError as exc:
            logger.warning("Could not load listings: %s", exc)
            ledger.record_failure("listing", exc)
            return
        if not listings:
            logger.info("No listing references this mark yet")
            return
        for listing in listings:
            if listing.status not in _RECONCILABLE_STATUSES:
                continue
            changed = reconcile_listing(listing, record, self.config)
            if not changed:
                continue
            try:
                await self.store.save_listing(listing)
            except (PersistenceError, SQLAlchemyError) as exc:
                logger.warning("Could not update listing %s: %s", listing.advert_id, exc)
                ledger.record_failure("listing", f"{listing.advert_id}: {exc}")
                continue
            logger.info("Listing %s updated: %s", listing.advert_id, ", ".join(changed))
