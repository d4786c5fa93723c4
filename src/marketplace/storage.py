from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from vehicles.data_models import (
    ListingRecord,
    VehicleRecord,
    listing_from_document,
    listing_to_document,
    vehicle_from_document,
    vehicle_to_document,
)
from vehicles.errors import WriteConflictError

logger = logging.getLogger(__name__)

metadata = MetaData()

vehicle_records_table = Table(
    "vehicle_records",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vrm", String(16), nullable=False, unique=True, index=True),
    Column("version", Integer, nullable=False, default=1),
    Column("document", JSON, nullable=False),
    Column("check_status", String(16), nullable=False),
    Column("checked_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

vehicle_record_audit_table = Table(
    "vehicle_record_audit",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_record_id", String(36), nullable=False, index=True),
    Column("vrm", String(16), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("document", JSON, nullable=False),
    Column("checked_at", DateTime(timezone=True), nullable=True),
    Column("archived_at", DateTime(timezone=True), nullable=False),
    Column("reason", String(32), nullable=False, default="superseded"),
)

listings_table = Table(
    "listings",
    metadata,
    Column("advert_id", String(36), primary_key=True),
    Column("vrm", String(16), nullable=True, index=True),
    Column("vehicle_record_id", String(36), nullable=True, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("document", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


class RefreshLock:
    """Per-key mutex shared across workers through Redis ``SET NX PX``.

    Falls back to an in-process lock table when Redis is unreachable.
    """

    _RELEASE_SCRIPT = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then return redis.call('del', KEYS[1]) else return 0 end"
    )

    def __init__(self, redis_url: str | None = None, namespace: str = "vehicle-refresh", poll_interval: float = 0.1) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.poll_interval = poll_interval
        self._client: Any = None
        self._mem: dict[str, tuple[str, float]] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        if not self.redis_url:
            return
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.warning("Redis unavailable at %s; refresh lock is process-local", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def acquire(self, key: str, ttl_seconds: int) -> str | None:
        full_key = self._build_key(key)
        token = uuid4().hex
        if self._client is not None:
            try:
                ok = await self._client.set(full_key, token, nx=True, px=ttl_seconds * 1000)
                return token if ok else None
            except Exception as exc:
                logger.warning("Redis lock acquire failed for %s: %s", full_key, exc)
        now = asyncio.get_running_loop().time()
        held = self._mem.get(full_key)
        if held is not None and held[1] > now:
            return None
        self._mem[full_key] = (token, now + ttl_seconds)
        return token

    async def release(self, key: str, token: str) -> None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                await self._client.eval(self._RELEASE_SCRIPT, 1, full_key, token)
                return
            except Exception as exc:
                logger.warning("Redis lock release failed for %s: %s", full_key, exc)
        held = self._mem.get(full_key)
        if held is not None and held[0] == token:
            self._mem.pop(full_key, None)

    async def acquire_blocking(self, key: str, ttl_seconds: int = 60) -> str:
        """Poll until the lock is free; give up after one TTL."""
        deadline = asyncio.get_running_loop().time() + ttl_seconds
        token = await self.acquire(key, ttl_seconds)
        while token is None:
            if asyncio.get_running_loop().time() > deadline:
                raise TimeoutError(f"Timed out waiting for refresh lock on {key}")
            await asyncio.sleep(self.poll_interval)
            token = await self.acquire(key, ttl_seconds)
        return token


class VehicleStore:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_vehicles: dict[str, dict[str, Any]] = {}
        self._mem_audit: list[dict[str, Any]] = []
        self._mem_listings: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            logger.warning("Database unavailable; using in-memory store")
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Vehicle records ────────────────────────────────────────────

    async def get_vehicle_record(self, vrm: str) -> VehicleRecord | None:
        if self.engine is None:
            row = self._mem_vehicles.get(vrm)
            return None if row is None else vehicle_from_document(row["document"])
        stmt = select(vehicle_records_table.c.document).where(vehicle_records_table.c.vrm == vrm)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return vehicle_from_document(row.document) if row else None

    async def get_vehicle_record_by_id(self, record_id: str) -> VehicleRecord | None:
        if self.engine is None:
            for row in self._mem_vehicles.values():
                if row["id"] == record_id:
                    return vehicle_from_document(row["document"])
            return None
        stmt = select(vehicle_records_table.c.document).where(vehicle_records_table.c.id == record_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return vehicle_from_document(row.document) if row else None

    async def save_vehicle_record(self, record: VehicleRecord, *, reason: str = "superseded") -> VehicleRecord:
        """Write ``record`` as the current version for its mark.

        ``record.version`` must equal the stored version (0 for a new mark);
        otherwise another refresh won the race and ``WriteConflictError`` is
        raised.  The replaced version is appended to the audit log.
        """
        expected = record.version
        now = datetime.now(timezone.utc)
        record.version = expected + 1
        row = {
            "id": record.id,
            "vrm": record.vrm,
            "version": record.version,
            "document": vehicle_to_document(record),
            "check_status": record.check_status,
            "checked_at": record.checked_at,
            "updated_at": now,
        }

        if self.engine is None:
            current = self._mem_vehicles.get(record.vrm)
            stored_version = current["version"] if current else 0
            if stored_version != expected or (current is not None and current["id"] != record.id):
                record.version = expected
                raise WriteConflictError(
                    f"Vehicle record {record.vrm} changed concurrently (expected v{expected}, found v{stored_version})"
                )
            if current is not None:
                self._mem_audit.append(self._audit_row(current, now, reason))
            self._mem_vehicles[record.vrm] = row
            return record

        try:
            async with self.engine.begin() as conn:
                if expected == 0:
                    await conn.execute(insert(vehicle_records_table).values(**row))
                    return record
                current = (
                    await conn.execute(
                        select(vehicle_records_table).where(vehicle_records_table.c.id == record.id)
                    )
                ).first()
                result = await conn.execute(
                    update(vehicle_records_table)
                    .where(vehicle_records_table.c.id == record.id)
                    .where(vehicle_records_table.c.version == expected)
                    .values(**row)
                )
                if result.rowcount != 1 or current is None:
                    raise WriteConflictError(f"Vehicle record {record.vrm} changed concurrently (expected v{expected})")
                await conn.execute(insert(vehicle_record_audit_table).values(**self._audit_row(dict(current._mapping), now, reason)))
        except IntegrityError as exc:
            record.version = expected
            raise WriteConflictError(f"Vehicle record {record.vrm} already exists") from exc
        except WriteConflictError:
            record.version = expected
            raise
        return record

    @staticmethod
    def _audit_row(current: dict[str, Any], archived_at: datetime, reason: str) -> dict[str, Any]:
        return {
            "id": str(uuid4()),
            "vehicle_record_id": current["id"],
            "vrm": current["vrm"],
            "version": current["version"],
            "document": current["document"],
            "checked_at": current["checked_at"],
            "archived_at": archived_at,
            "reason": reason,
        }

    async def append_audit(self, record: VehicleRecord, *, reason: str) -> None:
        row = self._audit_row(
            {
                "id": record.id,
                "vrm": record.vrm,
                "version": record.version,
                "document": vehicle_to_document(record),
                "checked_at": record.checked_at,
            },
            datetime.now(timezone.utc),
            reason,
        )
        if self.engine is None:
            self._mem_audit.append(row)
            return
        async with self.engine.begin() as conn:
            await conn.execute(insert(vehicle_record_audit_table).values(**row))

    async def list_vehicle_audit(self, vrm: str) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [r for r in self._mem_audit if r["vrm"] == vrm]
            return sorted(rows, key=lambda r: r["archived_at"], reverse=True)
        stmt = (
            select(vehicle_record_audit_table)
            .where(vehicle_record_audit_table.c.vrm == vrm)
            .order_by(vehicle_record_audit_table.c.archived_at.desc())
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def list_vehicle_records(self) -> list[VehicleRecord]:
        if self.engine is None:
            return [vehicle_from_document(r["document"]) for r in self._mem_vehicles.values()]
        async with self.engine.connect() as conn:
            rows = (await conn.execute(select(vehicle_records_table.c.document))).all()
        return [vehicle_from_document(r.document) for r in rows]

    async def delete_vehicle_records(self, record_ids: list[str]) -> int:
        if not record_ids:
            return 0
        if self.engine is None:
            doomed = [vrm for vrm, r in self._mem_vehicles.items() if r["id"] in record_ids]
            for vrm in doomed:
                self._mem_vehicles.pop(vrm)
            return len(doomed)
        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(vehicle_records_table).where(vehicle_records_table.c.id.in_(record_ids))
            )
        return result.rowcount

    # ── Listings ───────────────────────────────────────────────────

    @staticmethod
    def _listing_row(listing: ListingRecord) -> dict[str, Any]:
        return {
            "advert_id": listing.advert_id,
            "vrm": listing.vrm,
            "vehicle_record_id": listing.vehicle_record_id,
            "status": listing.status,
            "document": listing_to_document(listing),
            "created_at": listing.created_at,
            "updated_at": listing.updated_at,
        }

    async def insert_listing(self, listing: ListingRecord) -> str:
        now = datetime.now(timezone.utc)
        listing.created_at = listing.created_at or now
        listing.updated_at = now
        row = self._listing_row(listing)
        if self.engine is None:
            self._mem_listings[listing.advert_id] = row
            return listing.advert_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(listings_table).values(**row))
        return listing.advert_id

    async def save_listing(self, listing: ListingRecord) -> None:
        listing.updated_at = datetime.now(timezone.utc)
        row = self._listing_row(listing)
        if self.engine is None:
            self._mem_listings[listing.advert_id] = row
            return
        async with self.engine.begin() as conn:
            await conn.execute(
                update(listings_table).where(listings_table.c.advert_id == listing.advert_id).values(**row)
            )

    async def get_listing(self, advert_id: str) -> ListingRecord | None:
        if self.engine is None:
            row = self._mem_listings.get(advert_id)
            return None if row is None else listing_from_document(row["document"])
        stmt = select(listings_table.c.document).where(listings_table.c.advert_id == advert_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return listing_from_document(row.document) if row else None

    async def find_listings_by_vrm(self, vrm: str) -> list[ListingRecord]:
        if self.engine is None:
            return [listing_from_document(r["document"]) for r in self._mem_listings.values() if r["vrm"] == vrm]
        stmt = select(listings_table.c.document).where(listings_table.c.vrm == vrm)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [listing_from_document(r.document) for r in rows]

    async def list_listings(self, status: str | None = None) -> list[ListingRecord]:
        if self.engine is None:
            rows = [r for r in self._mem_listings.values() if status is None or r["status"] == status]
            return [listing_from_document(r["document"]) for r in rows]
        stmt = select(listings_table.c.document)
        if status is not None:
            stmt = stmt.where(listings_table.c.status == status)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [listing_from_document(r.document) for r in rows]

    # ── Integrity ──────────────────────────────────────────────────

    async def integrity_report(self) -> dict[str, Any]:
        records = await self.list_vehicle_records()
        listings = await self.list_listings()
        record_ids = {r.id for r in records}
        referenced = {l.vehicle_record_id for l in listings if l.vehicle_record_id}
        linked_vrms = {l.vrm for l in listings if l.vrm}

        dangling = [
            {"advert_id": l.advert_id, "vrm": l.vrm, "vehicle_record_id": l.vehicle_record_id}
            for l in listings
            if l.vehicle_record_id and l.vehicle_record_id not in record_ids
        ]
        orphans = [
            {"id": r.id, "vrm": r.vrm} for r in records if r.id not in referenced and r.vrm not in linked_vrms
        ]

        conflicts: list[dict[str, Any]] = []
        for record in records:
            for entry in await self.list_vehicle_audit(record.vrm):
                if entry["reason"] == "legacy_duplicate":
                    conflicts.append({"vrm": record.vrm, "audit_id": entry["id"], "current_id": record.id})

        return {
            "dangling_listing_references": dangling,
            "orphaned_vehicle_records": orphans,
            "legacy_duplicates": conflicts,
        }

    async def delete_orphaned_vehicle_records(self) -> list[str]:
        records = await self.list_vehicle_records()
        listings = await self.list_listings()
        referenced = {l.vehicle_record_id for l in listings if l.vehicle_record_id}
        linked_vrms = {l.vrm for l in listings if l.vrm}
        orphan_ids = [r.id for r in records if r.id not in referenced and r.vrm not in linked_vrms]
        deleted = await self.delete_vehicle_records(orphan_ids)
        logger.info("Deleted %d orphaned vehicle records", deleted)
        return orphan_ids
