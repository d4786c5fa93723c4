from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from marketplace.aggregator import VehicleDataAggregator, result_to_dict
from marketplace.auth import LookupRateLimiter, OperatorAuth
from marketplace.listings import FixReport, ListingOutcome, ListingService
from marketplace.logging_config import configure_logging, correlation_id
from marketplace.providers import ProviderSet, build_providers
from marketplace.settings import ServiceSettings
from marketplace.storage import RefreshLock, VehicleStore
from vehicles.data_models import AdvertPackage, SellerContact, listing_to_document, vehicle_to_document
from vehicles.errors import (
    InvalidTransitionError,
    ListingNotFoundError,
    MileageValidationError,
    RegistrationValidationError,
    WriteConflictError,
)
from vehicles.registration import validate_vrm

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class LookupRequest(BaseModel):
    mileage: int = Field(ge=0)
    force_refresh: bool = False


class SellerContactModel(BaseModel):
    type: str = Field(default="private", pattern="^(private|trade)$")
    phone: Optional[str] = None
    email: Optional[str] = None
    postcode: Optional[str] = None


class CreateListingRequest(BaseModel):
    vrm: Optional[str] = None
    mileage: Optional[int] = Field(default=None, ge=0)
    price: Optional[float] = Field(default=None, ge=0)
    description: str = ""
    images: list[str] = Field(default_factory=list)
    seller_contact: SellerContactModel = Field(default_factory=SellerContactModel)


class PublishRequest(BaseModel):
    package_id: str
    name: str
    duration_days: int = Field(gt=0)
    price: float = Field(ge=0)


class EnrichRequest(BaseModel):
    force_refresh: bool = False


class LockRequest(BaseModel):
    fields: list[str] = Field(min_length=1)
    values: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except (RegistrationValidationError, MileageValidationError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ListingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidTransitionError, WriteConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _outcome_body(outcome: ListingOutcome) -> dict[str, Any]:
    return {
        "listing": listing_to_document(outcome.listing),
        "lookup": result_to_dict(outcome.lookup) if outcome.lookup is not None else None,
    }


def _fix_body(report: FixReport) -> dict[str, Any]:
    return {
        "advert_id": report.advert_id,
        "missing": report.missing,
        "refreshed": report.refreshed,
        "message": report.message,
        "lookup": result_to_dict(report.lookup) if report.lookup is not None else None,
    }


# ── App Factory ─────────────────────────────────────────────────────

def create_app(settings: ServiceSettings | None = None, providers: ProviderSet | None = None) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    store = VehicleStore(dsn=settings.postgres_dsn)
    lock = RefreshLock(redis_url=settings.redis_url)
    aggregator = VehicleDataAggregator(
        store=store,
        providers=providers or build_providers(settings),
        config=settings.lookup_config(),
        lock=lock,
        lock_ttl_seconds=settings.refresh_lock_ttl_seconds,
    )
    listings = ListingService(store=store, aggregator=aggregator)

    operator_keys = [k.strip() for k in settings.operator_api_keys.split(",") if k.strip()]
    auth = OperatorAuth(allowed_keys=operator_keys or None)
    limiter = LookupRateLimiter(requests_per_minute=settings.lookup_rate_limit_rpm)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await lock.connect()
        await store.connect()
        try:
            yield
        finally:
            await lock.close()
            await store.close()

    app = FastAPI(title="Vehicle Marketplace API", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.aggregator = aggregator
    app.state.listings = listings

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await lock.ping(),
            "postgres": await store.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        stats = aggregator.stats
        return {
            "lookups": stats["lookups"],
            "cache_hits": stats["cache_hits"],
            "joined_in_flight": stats["joined"],
            "provider_calls": stats["provider_calls"],
            "provider_failures": stats["provider_failures"],
            "spend_gbp": str(aggregator.spend),
        }

    # ── Vehicles ────────────────────────────────────────────────────

    @app.post("/vehicles/{vrm}/lookup", dependencies=[Depends(limiter)])
    async def lookup_vehicle(vrm: str, payload: LookupRequest, request: Request) -> dict[str, Any]:
        if payload.force_refresh and not auth.validate(request.headers.get("X-Operator-Key")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Forced refresh requires an operator key")
        with _http_errors():
            result = await aggregator.fetch_complete_vehicle_data(vrm, payload.mileage, payload.force_refresh)
        return result_to_dict(result)

    @app.get("/vehicles/{vrm}")
    async def get_vehicle(vrm: str) -> dict[str, Any]:
        with _http_errors():
            normalized = validate_vrm(vrm)
        record = await store.get_vehicle_record(normalized)
        if record is None:
            raise HTTPException(status_code=404, detail="Vehicle record not found")
        return vehicle_to_document(record)

    # ── Listings ────────────────────────────────────────────────────

    @app.post("/listings", status_code=status.HTTP_201_CREATED)
    async def create_listing(payload: CreateListingRequest) -> dict[str, Any]:
        with _http_errors():
            listing = await listings.create_listing(
                vrm=payload.vrm,
                mileage=payload.mileage,
                price=payload.price,
                description=payload.description,
                images=payload.images,
                seller_contact=SellerContact(**payload.seller_contact.model_dump()),
            )
        return listing_to_document(listing)

    @app.get("/listings/{advert_id}")
    async def get_listing(advert_id: str) -> dict[str, Any]:
        with _http_errors():
            listing = await listings.get_listing(advert_id)
        return listing_to_document(listing)

    @app.post("/listings/{advert_id}/publish", dependencies=[Depends(limiter)])
    async def publish_listing(advert_id: str, payload: PublishRequest) -> dict[str, Any]:
        package = AdvertPackage(**payload.model_dump())
        with _http_errors():
            outcome = await listings.publish_listing(advert_id, package)
        return _outcome_body(outcome)

    @app.post("/listings/{advert_id}/cancel")
    async def cancel_listing(advert_id: str) -> dict[str, Any]:
        with _http_errors():
            listing = await listings.cancel_listing(advert_id)
        return listing_to_document(listing)

    @app.post("/listings/{advert_id}/enrich", dependencies=[Depends(limiter)])
    async def enrich_listing(advert_id: str, request: Request, payload: EnrichRequest | None = None) -> dict[str, Any]:
        force_refresh = payload.force_refresh if payload is not None else False
        if force_refresh and not auth.validate(request.headers.get("X-Operator-Key")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Forced refresh requires an operator key")
        with _http_errors():
            outcome = await listings.enrich_listing(advert_id, force_refresh=force_refresh)
        return _outcome_body(outcome)

    @app.post("/listings/{advert_id}/fix")
    async def fix_listing(advert_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        with _http_errors():
            report = await listings.fix_listing(advert_id)
        return _fix_body(report)

    @app.post("/listings/{advert_id}/lock")
    async def lock_listing_fields(advert_id: str, payload: LockRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        with _http_errors():
            listing = await listings.lock_fields(advert_id, payload.fields, payload.values)
        return listing_to_document(listing)

    # ── Admin ───────────────────────────────────────────────────────

    @app.get("/admin/integrity")
    async def integrity(_: str | None = Depends(auth)) -> dict[str, Any]:
        return await store.integrity_report()

    @app.post("/admin/cleanup-orphans")
    async def cleanup_orphans(_: str | None = Depends(auth)) -> dict[str, Any]:
        deleted = await store.delete_orphaned_vehicle_records()
        return {"deleted": len(deleted), "ids": deleted}

    return app


app = create_app()
