import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from marketplace.aggregator import VehicleDataAggregator, result_to_dict
from marketplace.storage import RefreshLock
from vehicles.config import LookupConfig
from vehicles.data_models import ListingRecord, VehicleRecord
from vehicles.errors import (
    MalformedPayloadError,
    MileageValidationError,
    ProviderError,
    RegistrationValidationError,
    WriteConflictError,
)

from conftest import NOW, FakeProvider, call_count, history_snapshot, make_providers, mot_tests, specs_snapshot


@pytest.mark.asyncio
async def test_fresh_lookup_calls_every_provider_and_bills_them(aggregator, providers, store):
    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert result.success is True
    assert result.cached is False
    assert result.errors == []
    assert result.api_calls == 4
    assert result.total_cost == Decimal("2.01")
    assert call_count(providers) == 4
    assert result.data.history is not None
    assert result.data.valuation.private_price == 8450.0

    stored = await store.get_vehicle_record("YD17AVU")
    assert stored is not None
    assert stored.check_status == "success"
    assert stored.checked_at == NOW
    assert stored.mot_status == "Valid"
    assert stored.running_costs.combined_mpg == 48.7


@pytest.mark.asyncio
async def test_second_lookup_inside_window_is_served_from_cache(aggregator, providers):
    first = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)
    second = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert second.cached is True
    assert second.api_calls == 0
    assert second.total_cost == Decimal("0")
    assert second.record == first.record
    assert second.data.history is None and second.data.mot is None
    assert call_count(providers) == 4
    assert aggregator.stats["cache_hits"] == 1


@pytest.mark.asyncio
async def test_case_and_whitespace_variants_share_the_cached_record(aggregator, providers):
    first = await aggregator.fetch_complete_vehicle_data(" yd17 avu ", 173130)
    second = await aggregator.fetch_complete_vehicle_data("Yd17AvU", 173130)

    assert first.vrm == "YD17AVU"
    assert second.cached is True
    assert call_count(providers) == 4


@pytest.mark.asyncio
async def test_force_refresh_always_calls_all_four_providers(aggregator, providers, store):
    await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)
    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130, force_refresh=True)

    assert result.cached is False
    assert result.api_calls == 4
    assert call_count(providers) == 8
    assert (await store.get_vehicle_record("YD17AVU")).version == 2
    audit = await store.list_vehicle_audit("YD17AVU")
    assert [entry["version"] for entry in audit] == [1]


@pytest.mark.asyncio
async def test_stale_record_is_refreshed(store, providers):
    old = VehicleRecord(vrm="YD17AVU", make="KIA", checked_at=NOW - timedelta(days=31), check_status="success")
    await store.save_vehicle_record(old)
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert result.cached is False
    assert result.api_calls == 4
    assert result.record.id == old.id
    assert result.record.checked_at == NOW


@pytest.mark.asyncio
async def test_mot_failure_is_isolated(store):
    providers = make_providers(mot=FakeProvider("mot", error=ProviderError("MOT service unavailable", service="mot")))
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert [e.service for e in result.errors] == ["mot"]
    assert result.errors[0].error == "MOT service unavailable"
    assert result.api_calls == 3
    assert result.total_cost == Decimal("1.99")
    assert result.data.mot is None

    stored = await store.get_vehicle_record("YD17AVU")
    assert stored.check_status == "partial"
    assert stored.history is not None
    assert stored.variant == "XCeed GT-Line"
    assert stored.valuation.private_price == 8450.0
    assert stored.mot_tests == []


@pytest.mark.asyncio
async def test_malformed_payload_counts_as_failure(store):
    providers = make_providers(specs=FakeProvider("specs", error=MalformedPayloadError("no sections", service="specs")))
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert [e.service for e in result.errors] == ["specs"]
    assert result.total_cost == Decimal("1.96")


@pytest.mark.asyncio
async def test_slow_provider_times_out_without_blocking_others(store):
    providers = make_providers(valuation=FakeProvider("valuation", delay=1.0))
    config = LookupConfig(provider_timeout_seconds=0.05)
    aggregator = VehicleDataAggregator(store, providers, config, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert [e.service for e in result.errors] == ["valuation"]
    assert "timed out" in result.errors[0].error
    assert result.api_calls == 3
    assert result.record.valuation is None


@pytest.mark.asyncio
async def test_total_failure_writes_nothing(store):
    providers = make_providers(
        **{name: FakeProvider(name, error=RuntimeError("connection reset")) for name in ("history", "specs", "mot", "valuation")}
    )
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert result.success is True
    assert result.record is None
    assert result.api_calls == 0
    assert result.total_cost == Decimal("0")
    assert sorted(e.service for e in result.errors) == ["history", "mot", "specs", "valuation"]
    assert await store.get_vehicle_record("YD17AVU") is None


@pytest.mark.asyncio
async def test_total_failure_leaves_existing_record_untouched(store):
    old = VehicleRecord(vrm="YD17AVU", make="KIA", checked_at=NOW - timedelta(days=45), check_status="success")
    await store.save_vehicle_record(old)
    providers = make_providers(
        **{name: FakeProvider(name, error=RuntimeError("boom")) for name in ("history", "specs", "mot", "valuation")}
    )
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    stored = await store.get_vehicle_record("YD17AVU")
    assert stored.version == 1
    assert stored.checked_at == NOW - timedelta(days=45)
    assert result.record == stored


@pytest.mark.asyncio
async def test_invalid_input_raises_before_any_provider_call(aggregator, providers):
    with pytest.raises(RegistrationValidationError):
        await aggregator.fetch_complete_vehicle_data("   ", 1000)
    with pytest.raises(RegistrationValidationError):
        await aggregator.fetch_complete_vehicle_data("AB-12-CDE!", 1000)
    with pytest.raises(MileageValidationError):
        await aggregator.fetch_complete_vehicle_data("YD17AVU", -1)
    with pytest.raises(MileageValidationError):
        await aggregator.fetch_complete_vehicle_data("YD17AVU", "12000")
    assert call_count(providers) == 0


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_fetch(store):
    providers = make_providers(history=FakeProvider("history", history_snapshot(), delay=0.05))
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    first, second = await asyncio.gather(
        aggregator.fetch_complete_vehicle_data("YD17AVU", 173130),
        aggregator.fetch_complete_vehicle_data("yd17 avu", 173130),
    )

    assert call_count(providers) == 4
    assert first is second
    assert aggregator.stats["joined"] == 1


@pytest.mark.asyncio
async def test_write_conflict_is_recorded_and_data_still_returned(aggregator, store, monkeypatch):
    async def conflicting_save(record, *, reason="superseded"):
        raise WriteConflictError("Vehicle record YD17AVU changed concurrently")

    monkeypatch.setattr(store, "save_vehicle_record", conflicting_save)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert [e.service for e in result.errors] == ["vehicle_record"]
    assert result.api_calls == 4
    assert result.record.make == "KIA"
    assert result.data.specs is not None


@pytest.mark.asyncio
async def test_failed_save_leaves_listing_unlinked(aggregator, store, monkeypatch):
    listing = ListingRecord(vrm="YD17AVU", status="active")
    await store.insert_listing(listing)

    async def conflicting_save(record, *, reason="superseded"):
        raise WriteConflictError("Vehicle record YD17AVU changed concurrently")

    monkeypatch.setattr(store, "save_vehicle_record", conflicting_save)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert [e.service for e in result.errors] == ["vehicle_record"]
    stored = await store.get_listing(listing.advert_id)
    assert stored.vehicle_record_id is None
    assert stored.make is None
    assert (await store.integrity_report())["dangling_listing_references"] == []


@pytest.mark.asyncio
async def test_failed_save_reconciles_listing_against_stored_record(store, providers, monkeypatch):
    old = VehicleRecord(vrm="YD17AVU", make="KIA", colour="Red", checked_at=NOW - timedelta(days=40))
    await store.save_vehicle_record(old)
    listing = ListingRecord(vrm="YD17AVU", status="active")
    await store.insert_listing(listing)
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    async def conflicting_save(record, *, reason="superseded"):
        raise WriteConflictError("Vehicle record YD17AVU changed concurrently")

    monkeypatch.setattr(store, "save_vehicle_record", conflicting_save)

    await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    stored = await store.get_listing(listing.advert_id)
    assert stored.vehicle_record_id == old.id
    assert stored.make == "KIA"
    assert stored.valuation is None


@pytest.mark.asyncio
async def test_joining_at_other_mileage_is_logged(store, caplog):
    providers = make_providers(history=FakeProvider("history", history_snapshot(), delay=0.05))
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    with caplog.at_level("WARNING", logger="marketplace.aggregator"):
        first, second = await asyncio.gather(
            aggregator.fetch_complete_vehicle_data("YD17AVU", 173130),
            aggregator.fetch_complete_vehicle_data("YD17AVU", 90000),
        )

    assert first is second
    assert any("started at mileage 173130" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_fuel_label_variant_is_replaced_but_real_variant_kept(store):
    placeholder = VehicleRecord(vrm="YD17AVU", variant="Petrol Hybrid", checked_at=NOW - timedelta(days=60))
    await store.save_vehicle_record(placeholder)
    concrete = VehicleRecord(vrm="AB12CDE", variant="GT-Line S", checked_at=NOW - timedelta(days=60))
    await store.save_vehicle_record(concrete)

    aggregator = VehicleDataAggregator(store, make_providers(), lock=RefreshLock(), clock=lambda: NOW)
    await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)
    await aggregator.fetch_complete_vehicle_data("AB12CDE", 173130)

    assert (await store.get_vehicle_record("YD17AVU")).variant == "XCeed GT-Line"
    assert (await store.get_vehicle_record("AB12CDE")).variant == "GT-Line S"


@pytest.mark.asyncio
async def test_empty_mot_response_keeps_previous_tests(store):
    previous = VehicleRecord(vrm="YD17AVU", mot_tests=mot_tests(), mot_status="Valid", checked_at=NOW - timedelta(days=40))
    await store.save_vehicle_record(previous)
    providers = make_providers(mot=FakeProvider("mot", []))
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert result.errors == []
    assert len(result.record.mot_tests) == 2
    assert result.record.mot_status == "Valid"


@pytest.mark.asyncio
async def test_hybrid_model_corrects_pure_fuel_type(store):
    providers = make_providers(specs=FakeProvider("specs", specs_snapshot(variant="1.6 GDi MHEV 3", fuel_type="Diesel")))
    aggregator = VehicleDataAggregator(store, providers, lock=RefreshLock(), clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    # history supplied "Petrol" first, so that base fuel survives the merge
    assert result.record.fuel_type == "Petrol Hybrid"


@pytest.mark.asyncio
async def test_end_to_end_listing_enrichment(aggregator, store):
    listing = ListingRecord(vrm="YD17AVU", mileage=173130, price=9999.0)
    await store.insert_listing(listing)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert result.api_calls == 4
    assert result.errors == []
    updated = await store.get_listing(listing.advert_id)
    assert updated.mileage == 173130
    assert updated.price == 8450.0
    assert updated.vehicle_record_id == result.record.id
    assert updated.variant == "XCeed GT-Line"
    assert updated.history_check_status == "verified"
    assert updated.mot_status == "Valid"


@pytest.mark.asyncio
async def test_listing_mileage_only_moves_up(store):
    higher = ListingRecord(vrm="YD17AVU", mileage=40000)
    await store.insert_listing(higher)
    aggregator = VehicleDataAggregator(
        store, make_providers(mot=FakeProvider("mot", mot_tests(42000))), lock=RefreshLock(), clock=lambda: NOW
    )
    await aggregator.fetch_complete_vehicle_data("YD17AVU", 40000)
    assert (await store.get_listing(higher.advert_id)).mileage == 42000

    lower = ListingRecord(vrm="AB12CDE", mileage=40000)
    await store.insert_listing(lower)
    aggregator = VehicleDataAggregator(
        store, make_providers(mot=FakeProvider("mot", mot_tests(38000))), lock=RefreshLock(), clock=lambda: NOW
    )
    await aggregator.fetch_complete_vehicle_data("AB12CDE", 40000)
    assert (await store.get_listing(lower.advert_id)).mileage == 40000


@pytest.mark.asyncio
async def test_cache_hit_still_reconciles_new_listing(aggregator, store):
    await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)
    listing = ListingRecord(vrm="YD17AVU", mileage=100)
    await store.insert_listing(listing)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 100)

    assert result.cached is True
    updated = await store.get_listing(listing.advert_id)
    assert updated.make == "KIA"
    assert updated.mileage == 173130


@pytest.mark.asyncio
async def test_cancelled_listing_is_not_touched(aggregator, store):
    listing = ListingRecord(vrm="YD17AVU", mileage=5, status="cancelled")
    await store.insert_listing(listing)

    await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert (await store.get_listing(listing.advert_id)).mileage == 5


@pytest.mark.asyncio
async def test_listing_save_failure_is_recorded(aggregator, store, monkeypatch):
    await store.insert_listing(ListingRecord(vrm="YD17AVU", mileage=1))

    async def broken_save(listing):
        raise WriteConflictError("listing row locked")

    monkeypatch.setattr(store, "save_listing", broken_save)
    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert [e.service for e in result.errors] == ["listing"]
    assert "listing row locked" in result.errors[0].error
    assert (await store.get_vehicle_record("YD17AVU")).check_status == "success"


@pytest.mark.asyncio
async def test_result_serialises_costs_as_strings(aggregator):
    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)
    body = result_to_dict(result)

    assert body["total_cost"] == "2.01"
    assert body["record"]["vrm"] == "YD17AVU"
    assert body["data"]["mot"][0]["odometer_value"] == 173130


@pytest.mark.asyncio
async def test_refresh_proceeds_when_lock_is_stuck(store, providers):
    lock = RefreshLock(poll_interval=0.01)
    await lock.acquire("YD17AVU", ttl_seconds=30)
    aggregator = VehicleDataAggregator(store, providers, lock=lock, lock_ttl_seconds=0, clock=lambda: NOW)

    result = await aggregator.fetch_complete_vehicle_data("YD17AVU", 173130)

    assert result.api_calls == 4
    assert result.errors == []
