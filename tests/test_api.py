from fastapi.testclient import TestClient

from marketplace.api import create_app
from marketplace.settings import ServiceSettings

from conftest import BAD_DSN, call_count, make_providers


def _settings(**overrides) -> ServiceSettings:
    values = {
        "POSTGRES_DSN": BAD_DSN,
        "REDIS_URL": "redis://127.0.0.1:1/0",
        "LOG_FORMAT": "text",
    }
    values.update(overrides)
    return ServiceSettings(**values)


def _client(providers=None, **overrides) -> TestClient:
    return TestClient(create_app(settings=_settings(**overrides), providers=providers or make_providers()))


def test_health_and_readiness():
    with _client() as client:
        assert client.get("/health").json() == {"status": "ok"}
        ready = client.get("/ready")
        assert ready.status_code == 503
        assert ready.json()["detail"]["checks"] == {"redis": False, "postgres": False}


def test_lookup_then_cache_hit_and_metrics():
    providers = make_providers()
    with _client(providers) as client:
        first = client.post("/vehicles/yd17avu/lookup", json={"mileage": 173130})
        assert first.status_code == 200
        body = first.json()
        assert body["vrm"] == "YD17AVU"
        assert body["api_calls"] == 4
        assert body["total_cost"] == "2.01"
        assert body["errors"] == []

        second = client.post("/vehicles/YD17AVU/lookup", json={"mileage": 173130}).json()
        assert second["cached"] is True
        assert second["api_calls"] == 0
        assert call_count(providers) == 4

        record = client.get("/vehicles/YD17AVU").json()
        assert record["variant"] == "XCeed GT-Line"

        metrics = client.get("/metrics").json()
        assert metrics["lookups"] == 2
        assert metrics["cache_hits"] == 1
        assert metrics["provider_calls"] == 4
        assert metrics["spend_gbp"] == "2.01"


def test_lookup_validation_errors():
    providers = make_providers()
    with _client(providers) as client:
        assert client.post("/vehicles/AB-12/lookup", json={"mileage": 100}).status_code == 422
        assert client.post("/vehicles/YD17AVU/lookup", json={"mileage": -1}).status_code == 422
        assert client.get("/vehicles/YD17AVU").status_code == 404
        assert call_count(providers) == 0


def test_listing_lifecycle_over_http():
    with _client() as client:
        created = client.post("/listings", json={"vrm": "yd17avu", "mileage": 150000, "price": 9999})
        assert created.status_code == 201
        advert_id = created.json()["advert_id"]

        published = client.post(
            f"/listings/{advert_id}/publish",
            json={"package_id": "std-14", "name": "Standard", "duration_days": 14, "price": 9.99},
        )
        assert published.status_code == 200
        listing = published.json()["listing"]
        assert listing["status"] == "active"
        assert listing["mileage"] == 173130
        assert listing["price"] == 8450.0
        assert published.json()["lookup"]["api_calls"] == 4

        locked = client.post(f"/listings/{advert_id}/lock", json={"fields": ["price"], "values": {"price": 7000.0}})
        assert locked.json()["locked_fields"] == ["price"]

        enriched = client.post(f"/listings/{advert_id}/enrich").json()
        assert enriched["lookup"]["cached"] is True
        assert enriched["listing"]["price"] == 7000.0

        fixed = client.post(f"/listings/{advert_id}/fix").json()
        assert fixed["missing"] == []
        assert fixed["refreshed"] is False

        assert client.post(f"/listings/{advert_id}/cancel").status_code == 200
        assert client.post(f"/listings/{advert_id}/cancel").status_code == 409
        assert client.get(f"/listings/{advert_id}").json()["status"] == "cancelled"
        assert client.get("/listings/does-not-exist").status_code == 404


def test_lock_rejects_unknown_field():
    with _client() as client:
        advert_id = client.post("/listings", json={}).json()["advert_id"]
        resp = client.post(f"/listings/{advert_id}/lock", json={"fields": ["status"]})
        assert resp.status_code == 422


def test_operator_endpoints_require_key():
    with _client(OPERATOR_API_KEYS="ops-secret") as client:
        assert client.get("/admin/integrity").status_code == 401
        assert client.get("/admin/integrity", headers={"X-Operator-Key": "wrong"}).status_code == 401

        report = client.get("/admin/integrity", headers={"X-Operator-Key": "ops-secret"})
        assert report.status_code == 200
        assert set(report.json()) == {"dangling_listing_references", "orphaned_vehicle_records", "legacy_duplicates"}

        forced = client.post("/vehicles/YD17AVU/lookup", json={"mileage": 1, "force_refresh": True})
        assert forced.status_code == 401
        forced = client.post(
            "/vehicles/YD17AVU/lookup",
            json={"mileage": 1, "force_refresh": True},
            headers={"X-Operator-Key": "ops-secret"},
        )
        assert forced.status_code == 200


def test_cleanup_orphans_removes_unreferenced_records():
    with _client() as client:
        client.post("/vehicles/YD17AVU/lookup", json={"mileage": 173130})
        assert client.get("/admin/integrity").json()["orphaned_vehicle_records"][0]["vrm"] == "YD17AVU"

        cleaned = client.post("/admin/cleanup-orphans").json()
        assert cleaned["deleted"] == 1
        assert client.get("/vehicles/YD17AVU").status_code == 404


def test_lookup_rate_limit():
    with _client(LOOKUP_RATE_LIMIT_RPM=1) as client:
        assert client.post("/vehicles/YD17AVU/lookup", json={"mileage": 1}).status_code == 200
        assert client.post("/vehicles/YD17AVU/lookup", json={"mileage": 1}).status_code == 429
        assert client.get("/health").status_code == 200


def test_correlation_id_is_echoed():
    with _client() as client:
        resp = client.get("/health", headers={"X-Correlation-ID": "req-42"})
        assert resp.headers["X-Correlation-ID"] == "req-42"
