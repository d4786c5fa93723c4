"""Field merge rules shared by the vehicle record and the listing.

Each rule works on one field at a time:

* a populated, non-placeholder value is never replaced by an empty one;
* a placeholder is always replaced by a concrete incoming value;
* two concrete values keep the existing one, except for the hybrid fuel-type
  upgrade (``Diesel`` -> ``Diesel Hybrid``).
"""

from __future__ import annotations

from dataclasses import fields
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from vehicles.config import LookupConfig
from vehicles.data_models import (
    HistorySnapshot,
    ListingRecord,
    MotTest,
    RunningCosts,
    SpecsSnapshot,
    ValuationSnapshot,
    VehicleRecord,
)

DEFAULT_CONFIG = LookupConfig()

DESCRIPTIVE_FIELDS: tuple[str, ...] = (
    "make",
    "model",
    "variant",
    "year",
    "body_type",
    "fuel_type",
    "transmission",
    "engine_capacity",
    "colour",
    "doors",
    "seats",
)

_HYBRID_MARKERS = ("hybrid", "mhev", "phev")


def is_placeholder(value: Any, field_name: str | None = None, config: LookupConfig = DEFAULT_CONFIG) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        text = value.strip().lower()
        if text in config.placeholder_strings:
            return True
        # a variant that merely repeats the fuel type was derived, not sourced
        if field_name == "variant" and text in config.fuel_type_labels:
            return True
    return False


def _base_fuel(fuel_type: str) -> str | None:
    lowered = fuel_type.lower()
    if "diesel" in lowered:
        return "diesel"
    if "petrol" in lowered or "gasoline" in lowered:
        return "petrol"
    return None


def is_hybrid_upgrade(existing: Any, incoming: Any) -> bool:
    """``incoming`` is the hybrid form of the pure fuel type in ``existing``."""
    if not isinstance(existing, str) or not isinstance(incoming, str):
        return False
    if "hybrid" in existing.lower() or "hybrid" not in incoming.lower():
        return False
    base = _base_fuel(existing)
    return base is not None and base == _base_fuel(incoming)


def merge_value(existing: Any, incoming: Any, field_name: str | None = None, config: LookupConfig = DEFAULT_CONFIG) -> Any:
    if is_placeholder(incoming, field_name, config):
        return existing
    if is_placeholder(existing, field_name, config):
        return incoming
    if field_name == "fuel_type" and is_hybrid_upgrade(existing, incoming):
        return incoming
    return existing


def merge_running_costs(existing: RunningCosts, incoming: RunningCosts, config: LookupConfig = DEFAULT_CONFIG) -> RunningCosts:
    merged = RunningCosts()
    for f in fields(RunningCosts):
        setattr(merged, f.name, merge_value(getattr(existing, f.name), getattr(incoming, f.name), f.name, config))
    return merged


def _fill(target: Any, source: Any, names: Iterable[str], config: LookupConfig, locked: Iterable[str] = ()) -> list[str]:
    changed: list[str] = []
    skip = set(locked)
    for name in names:
        if name in skip or not hasattr(source, name):
            continue
        before = getattr(target, name)
        after = merge_value(before, getattr(source, name), name, config)
        if after != before:
            setattr(target, name, after)
            changed.append(name)
    return changed


def reconcile_hybrid_fuel_type(fuel_type: Optional[str], model: Optional[str], variant: Optional[str]) -> Optional[str]:
    """Correct a pure fuel type when the model or variant names a hybrid."""
    if not fuel_type:
        return fuel_type
    descriptor = f"{model or ''} {variant or ''}".lower()
    if not any(marker in descriptor for marker in _HYBRID_MARKERS):
        return fuel_type
    lowered = fuel_type.lower()
    if "hybrid" in lowered:
        return fuel_type
    if "diesel" in lowered:
        return "Diesel Hybrid"
    if "petrol" in lowered:
        return "Petrol Hybrid"
    if lowered == "electric":
        if any(marker in descriptor for marker in ("diesel", "tdi", "hdi")):
            return "Diesel Hybrid"
        return "Petrol Hybrid"
    return fuel_type


# ── Vehicle record ─────────────────────────────────────────────────


def apply_history(record: VehicleRecord, snapshot: HistorySnapshot, config: LookupConfig = DEFAULT_CONFIG) -> list[str]:
    changed = _fill(
        record,
        snapshot,
        ("make", "model", "colour", "fuel_type", "year", "engine_capacity"),
        config,
    )
    record.history = snapshot.facts
    record.provider = snapshot.provider
    record.test_mode = snapshot.test_mode
    changed.append("history")
    return changed


def apply_specs(record: VehicleRecord, snapshot: SpecsSnapshot, config: LookupConfig = DEFAULT_CONFIG) -> list[str]:
    changed = _fill(record, snapshot, DESCRIPTIVE_FIELDS + ("emission_class",), config)
    running_costs = merge_running_costs(record.running_costs, snapshot.running_costs, config)
    if running_costs != record.running_costs:
        record.running_costs = running_costs
        changed.append("running_costs")
    return changed


def derive_mot_status(test: MotTest | None, now: datetime | None = None) -> Optional[str]:
    if test is None:
        return None
    if test.result != "PASSED":
        return "Invalid"
    now = now or datetime.now(timezone.utc)
    if test.expiry_date is not None and test.expiry_date < now:
        return "Expired"
    return "Valid"


def apply_mot(record: VehicleRecord, tests: list[MotTest], now: datetime | None = None) -> list[str]:
    if not tests:
        return []
    record.mot_tests = sorted(tests, key=lambda t: t.test_date, reverse=True)
    latest = record.mot_tests[0]
    record.mot_status = derive_mot_status(latest, now)
    record.mot_expiry = latest.expiry_date
    return ["mot_tests", "mot_status", "mot_expiry"]


def apply_valuation(record: VehicleRecord, snapshot: ValuationSnapshot) -> list[str]:
    record.valuation = snapshot
    return ["valuation"]


def finalize_record(record: VehicleRecord, *, succeeded: Iterable[str], failed: Iterable[str], now: datetime) -> None:
    succeeded, failed = list(succeeded), list(failed)
    record.fuel_type = reconcile_hybrid_fuel_type(record.fuel_type, record.model, record.variant)
    record.checked_at = now
    if not succeeded:
        record.check_status = "failed"
    elif failed:
        record.check_status = "partial"
    else:
        record.check_status = "success"


# ── Listing ────────────────────────────────────────────────────────


def reconcile_listing(listing: ListingRecord, record: VehicleRecord, config: LookupConfig = DEFAULT_CONFIG) -> list[str]:
    """Merge the vehicle record into a listing in place; return changed field names."""
    locked = listing.locked_fields
    changed = _fill(listing, record, DESCRIPTIVE_FIELDS, config, locked)

    if not listing.is_locked("fuel_type"):
        fuel_type = reconcile_hybrid_fuel_type(listing.fuel_type, listing.model, listing.variant)
        if fuel_type != listing.fuel_type:
            listing.fuel_type = fuel_type
            changed.append("fuel_type")

    if not listing.is_locked("running_costs"):
        running_costs = merge_running_costs(listing.running_costs, record.running_costs, config)
        if running_costs != listing.running_costs:
            listing.running_costs = running_costs
            changed.append("running_costs")

    if record.mot_tests and not listing.is_locked("mot_status"):
        if (listing.mot_status, listing.mot_expiry) != (record.mot_status, record.mot_expiry):
            listing.mot_status = record.mot_status
            listing.mot_expiry = record.mot_expiry
            changed.extend(["mot_status", "mot_expiry"])

    latest = record.latest_mot
    reading = latest.odometer_miles if latest else None
    if reading is not None and not listing.is_locked("mileage"):
        if listing.mileage is None or reading > listing.mileage:
            listing.mileage = reading
            changed.append("mileage")

    # a locked price also freezes the valuation shown beside it
    if record.valuation is not None and not listing.is_locked("price"):
        if listing.valuation != record.valuation:
            listing.valuation = record.valuation
            changed.append("valuation")
        private = record.valuation.private_price
        if private is not None and listing.price != private:
            listing.price = private
            changed.append("price")

    if listing.vehicle_record_id != record.id:
        listing.vehicle_record_id = record.id
        changed.append("vehicle_record_id")
    if record.history is not None:
        listing.history_check_status = "verified"
        listing.history_checked_at = record.checked_at
    return changed
