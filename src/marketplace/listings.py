from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import groupby
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from marketplace.aggregator import LookupResult, VehicleDataAggregator
from marketplace.storage import VehicleStore
from vehicles.data_models import (
    AdvertPackage,
    ListingRecord,
    RunningCosts,
    SellerContact,
    VehicleRecord,
    vehicle_from_document,
)
from vehicles.errors import InvalidTransitionError, ListingNotFoundError, RegistrationValidationError
from vehicles.lifecycle import check_transition
from vehicles.reconciliation import DESCRIPTIVE_FIELDS
from vehicles.registration import normalize_vrm, validate_mileage, validate_vrm

logger = logging.getLogger(__name__)
integrity_logger = logging.getLogger("data-integrity")

LOCKABLE_FIELDS: frozenset[str] = frozenset(DESCRIPTIVE_FIELDS) | {"price", "mileage", "mot_status", "running_costs"}

_ENRICHABLE_STATUSES = frozenset({"pending", "active"})


@dataclass
class ListingOutcome:
    listing: ListingRecord
    lookup: Optional[LookupResult] = None


@dataclass
class FixReport:
    advert_id: str
    missing: list[str] = field(default_factory=list)
    refreshed: bool = False
    lookup: Optional[LookupResult] = None

    @property
    def message(self) -> str:
        if not self.missing:
            return "Listing already has complete vehicle data"
        return f"Refreshed missing data: {', '.join(self.missing)}"


class ListingService:
    """Advert lifecycle on top of the store, with enrichment through the aggregator."""

    def __init__(
        self,
        store: VehicleStore,
        aggregator: VehicleDataAggregator,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_listing(self, advert_id: str) -> ListingRecord:
        listing = await self.store.get_listing(advert_id)
        if listing is None:
            raise ListingNotFoundError(f"Advert {advert_id} not found")
        return listing

    async def create_listing(
        self,
        *,
        vrm: str | None = None,
        mileage: int | None = None,
        price: float | None = None,
        description: str = "",
        images: Iterable[str] = (),
        seller_contact: SellerContact | None = None,
    ) -> ListingRecord:
        listing = ListingRecord(
            vrm=validate_vrm(vrm) if vrm else None,
            mileage=validate_mileage(mileage) if mileage is not None else None,
            price=price,
            description=description,
            images=list(images),
            seller_contact=seller_contact or SellerContact(),
        )
        await self.store.insert_listing(listing)
        logger.info("Created pending advert %s for %s", listing.advert_id, listing.vrm or "unregistered vehicle")
        return listing

    async def publish_listing(self, advert_id: str, package: AdvertPackage) -> ListingOutcome:
        """Activate a paid advert and enrich it when it carries a mark."""
        listing = await self.get_listing(advert_id)
        check_transition(listing.status, "active")
        now = self._clock()
        package.expires_at = now + timedelta(days=package.duration_days)
        listing.package = package
        listing.status = "active"
        listing.published_at = now
        await self.store.save_listing(listing)
        logger.info("Advert %s published with package %s until %s", advert_id, package.name, package.expires_at.isoformat())

        if not listing.vrm:
            return ListingOutcome(listing=listing)
        return await self.enrich_listing(advert_id)

    async def cancel_listing(self, advert_id: str) -> ListingRecord:
        listing = await self.get_listing(advert_id)
        check_transition(listing.status, "cancelled")
        listing.status = "cancelled"
        await self.store.save_listing(listing)
        logger.info("Advert %s cancelled", advert_id)
        return listing

    async def expire_due_listings(self, now: datetime | None = None) -> list[str]:
        now = now or self._clock()
        expired: list[str] = []
        for listing in await self.store.list_listings(status="active"):
            expires_at = listing.package.expires_at if listing.package else None
            if expires_at is None or expires_at > now:
                continue
            check_transition(listing.status, "expired")
            listing.status = "expired"
            await self.store.save_listing(listing)
            expired.append(listing.advert_id)
        if expired:
            logger.info("Expired %d adverts", len(expired))
        return expired

    async def enrich_listing(self, advert_id: str, force_refresh: bool = False) -> ListingOutcome:
        listing = await self.get_listing(advert_id)
        if listing.status not in _ENRICHABLE_STATUSES:
            raise InvalidTransitionError(f"Cannot enrich a {listing.status} advert")
        if not listing.vrm:
            raise RegistrationValidationError(f"Advert {advert_id} has no registration mark")

        lookup = await self.aggregator.fetch_complete_vehicle_data(listing.vrm, listing.mileage or 0, force_refresh)
        return ListingOutcome(listing=await self.get_listing(advert_id), lookup=lookup)

    async def lock_fields(
        self, advert_id: str, fields: Iterable[str], values: dict[str, Any] | None = None
    ) -> ListingRecord:
        """Apply an operator correction and shield the fields from automatic merges."""
        names = list(fields)
        values = dict(values or {})
        unknown = sorted((set(names) | set(values)) - LOCKABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be locked: {', '.join(unknown)}")
        stray = sorted(set(values) - set(names))
        if stray:
            raise ValueError(f"Values given for fields that are not being locked: {', '.join(stray)}")
        if "mileage" in values:
            validate_mileage(values["mileage"])
        if isinstance(values.get("running_costs"), dict):
            values["running_costs"] = RunningCosts(**values["running_costs"])

        listing = await self.get_listing(advert_id)
        for name, value in values.items():
            setattr(listing, name, value)
        for name in names:
            if name not in listing.locked_fields:
                listing.locked_fields.append(name)
        await self.store.save_listing(listing)
        logger.info("Operator locked %s on advert %s", ", ".join(names), advert_id)
        return listing

    async def fix_listing(self, advert_id: str) -> FixReport:
        listing = await self.get_listing(advert_id)
        if not listing.vrm:
            raise RegistrationValidationError(f"Advert {advert_id} has no registration mark")

        record: VehicleRecord | None = None
        if listing.vehicle_record_id:
            record = await self.store.get_vehicle_record_by_id(listing.vehicle_record_id)
        if record is None:
            record = await self.store.get_vehicle_record(listing.vrm)

        report = FixReport(advert_id=advert_id)
        if listing.history_check_status != "verified" or record is None or record.history is None:
            report.missing.append("history")
        if record is None or not record.mot_tests:
            report.missing.append("mot")
        if listing.valuation is None and not listing.is_locked("price"):
            report.missing.append("valuation")

        if not report.missing:
            logger.info("Advert %s already complete", advert_id)
            return report

        logger.info("Advert %s missing %s; forcing refresh", advert_id, ", ".join(report.missing))
        outcome = await self.enrich_listing(advert_id, force_refresh=True)
        report.refreshed = True
        report.lookup = outcome.lookup
        return report


# ── Migration ──────────────────────────────────────────────────────


def _checked_sort_key(record: VehicleRecord) -> datetime:
    return record.checked_at or datetime.min.replace(tzinfo=timezone.utc)


async def import_legacy_records(store: VehicleStore, documents: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Load legacy vehicle documents, keeping one current record per mark.

    The most recently checked document becomes the current record and the rest
    are archived with reason ``legacy_duplicate``.  When a mark already has a
    live record, every legacy document for it is archived.  Documents already
    present as the current record or in the audit log are skipped, so running
    the import twice changes nothing.
    """
    summary = {"imported": 0, "duplicates": 0, "skipped": 0, "invalid": 0}
    records: list[VehicleRecord] = []
    for doc in documents:
        try:
            record = vehicle_from_document(doc)
        except ValidationError as exc:
            logger.warning("Skipping unreadable legacy document: %s", exc.errors()[:1])
            summary["invalid"] += 1
            continue
        record.vrm = normalize_vrm(record.vrm)
        records.append(record)

    records.sort(key=lambda r: r.vrm)
    for vrm, group in groupby(records, key=lambda r: r.vrm):
        candidates = sorted(group, key=_checked_sort_key, reverse=True)
        current = await store.get_vehicle_record(vrm)
        seen = {entry["document"].get("id") for entry in await store.list_vehicle_audit(vrm)}
        if current is not None:
            seen.add(current.id)

        fresh = [r for r in candidates if r.id not in seen]
        summary["skipped"] += len(candidates) - len(fresh)
        if not fresh:
            continue

        if current is None:
            winner, losers = fresh[0], fresh[1:]
            winner.version = 0
            await store.save_vehicle_record(winner, reason="legacy_duplicate")
            summary["imported"] += 1
            current_id = winner.id
        else:
            losers = fresh
            current_id = current.id

        for loser in losers:
            await store.append_audit(loser, reason="legacy_duplicate")
            summary["duplicates"] += 1
            integrity_logger.warning(
                "Legacy record %s for %s archived as duplicate of %s; review before deleting",
                loser.id,
                vrm,
                current_id,
            )
    logger.info(
        "Legacy import: %(imported)d imported, %(duplicates)d duplicates, %(skipped)d skipped, %(invalid)d invalid",
        summary,
    )
    return summary
