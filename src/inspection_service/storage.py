from __future__ import annotations

import asyncio
import json
import time
import weakref
from dataclasses import replace
from datetime import datetime
from typing import Any

import redis.asyncio as redis
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from inspection import lifecycle
from inspection.data_models import DECLARED_FIELDS, Detection, FraudAssessment, Inspection, Upload
from inspection.errors import NotFound


metadata = MetaData()

inspections_table = Table(
    "inspections",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("status", String(16), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False),
    Column("token_expiry", DateTime(timezone=True), nullable=False),
    Column("order_id", String(128), nullable=True),
    Column("buyer_email", String(255), nullable=True),
    Column("seller_phone", String(64), nullable=True),
    Column("seller_email", String(255), nullable=True),
    Column("price", Float, nullable=True),
    Column("vin", String(32), nullable=True, index=True),
    Column("odometer_reading", Integer, nullable=True),
    Column("seller_zip", String(16), nullable=True),
    Column("notes", Text, nullable=True),
    Column("seller_disclosed_damage", Boolean, nullable=False, default=False),
    Column("tire", JSON, nullable=True),
    Column("fraud_score", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)

uploads_table = Table(
    "uploads",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("inspection_id", String(36), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("filename", String(255), nullable=False),
    Column("original_filename", String(255), nullable=False),
    Column("path", String(512), nullable=False),
    Column("mime_type", String(128), nullable=False),
    Column("size", Integer, nullable=False),
    Column("category", String(64), nullable=True, index=True),
    Column("lat", Float, nullable=True),
    Column("lng", Float, nullable=True),
    Column("accuracy", Float, nullable=True),
    Column("uploaded_at", DateTime(timezone=True), nullable=False),
    Column("exif", JSON, nullable=True),
    Column("quality", JSON, nullable=True),
    Column("detection", JSON, nullable=True),
    Column("recognized_vin", String(32), nullable=True),
)


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "inspection") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    def _purge_expired(self, now: float) -> None:
        for key in [k for k, exp in self._expiry.items() if now > exp]:
            self._mem.pop(key, None)
            self._expiry.pop(key, None)

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        self._purge_expired(time.monotonic())
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                pass
        self._mem[full_key] = payload
        self._expiry[full_key] = time.monotonic() + ttl_seconds

    async def delete(self, key: str) -> None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                await self._client.delete(full_key)
            except Exception:
                pass
        self._mem.pop(full_key, None)
        self._expiry.pop(full_key, None)


def _inspection_row(insp: Inspection) -> dict[str, Any]:
    row = insp.to_dict(include_secret=True)
    row.update(
        token_expiry=insp.token_expiry,
        created_at=insp.created_at,
        updated_at=insp.updated_at,
        completed_at=insp.completed_at,
    )
    return row


def _upload_row(upload: Upload, position: int) -> dict[str, Any]:
    row = upload.to_dict()
    row.update(position=position, uploaded_at=upload.uploaded_at)
    return row


class InspectionStore:
    """Durable inspections and uploads.

    Every write to one inspection (and to its uploads) runs under that
    inspection's ``asyncio.Lock`` so concurrent uploads never lose an append.
    Locks live in a weak-value map and disappear once no writer holds them.
    Reads take no lock. Falls back to an in-process store when PostgreSQL is
    unreachable at startup.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._mem_inspections: dict[str, Inspection] = {}
        self._mem_uploads: dict[str, Upload] = {}
        self._mem_upload_order: dict[str, list[str]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
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

    def _lock_for(self, inspection_id: str) -> asyncio.Lock:
        lock = self._locks.get(inspection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[inspection_id] = lock
        return lock

    # ── Inspections ─────────────────────────────────────────────────

    async def insert_inspection(self, inspection: Inspection) -> Inspection:
        if self.engine is None:
            self._mem_inspections[inspection.id] = inspection
            self._mem_upload_order.setdefault(inspection.id, [])
            return inspection
        async with self.engine.begin() as conn:
            await conn.execute(insert(inspections_table).values(**_inspection_row(inspection)))
        return inspection

    async def get_inspection(self, inspection_id: str) -> Inspection | None:
        if self.engine is None:
            return self._mem_inspections.get(inspection_id)
        async with self.engine.connect() as conn:
            return await self._fetch_inspection(conn, inspection_id)

    async def list_inspections(self, limit: int = 100) -> list[Inspection]:
        if self.engine is None:
            rows = sorted(self._mem_inspections.values(), key=lambda i: i.created_at, reverse=True)
            return rows[:limit]
        stmt = select(inspections_table).order_by(inspections_table.c.created_at.desc()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [Inspection.from_dict(dict(r._mapping)) for r in rows]

    async def update_declared(self, inspection_id: str, changes: dict[str, Any], at: datetime) -> Inspection:
        unknown = set(changes) - set(DECLARED_FIELDS)
        if unknown:
            raise ValueError(f"not declared attributes: {sorted(unknown)}")
        async with self._lock_for(inspection_id):
            if self.engine is None:
                current = self._require(self._mem_inspections.get(inspection_id))
                updated = replace(current, **changes, updated_at=at)
                self._mem_inspections[inspection_id] = updated
                return updated
            async with self.engine.begin() as conn:
                current = self._require(await self._fetch_inspection(conn, inspection_id))
                updated = replace(current, **changes, updated_at=at)
                await self._write_inspection(conn, updated)
            return updated

    async def save_assessment(self, inspection_id: str, assessment: FraudAssessment, at: datetime) -> Inspection:
        """Replace the cached assessment; auto-flagged inspections move to ``flagged``."""
        async with self._lock_for(inspection_id):
            if self.engine is None:
                current = self._require(self._mem_inspections.get(inspection_id))
                updated = lifecycle.on_assessment(replace(current, fraud_score=assessment), assessment.auto_flag, at)
                self._mem_inspections[inspection_id] = updated
                return updated
            async with self.engine.begin() as conn:
                current = self._require(await self._fetch_inspection(conn, inspection_id))
                updated = lifecycle.on_assessment(replace(current, fraud_score=assessment), assessment.auto_flag, at)
                await self._write_inspection(conn, updated)
            return updated

    async def complete(self, inspection_id: str, at: datetime) -> Inspection:
        async with self._lock_for(inspection_id):
            if self.engine is None:
                current = self._require(self._mem_inspections.get(inspection_id))
                updated = lifecycle.transition(current, "completed", at)
                self._mem_inspections[inspection_id] = updated
                return updated
            async with self.engine.begin() as conn:
                current = self._require(await self._fetch_inspection(conn, inspection_id))
                updated = lifecycle.transition(current, "completed", at)
                await self._write_inspection(conn, updated)
            return updated

    # ── Uploads ─────────────────────────────────────────────────────

    async def append_upload(self, upload: Upload, at: datetime) -> Inspection:
        """Append ``upload`` to its inspection and apply the intake transition.

        Returns the inspection as it stands after the append.
        """
        inspection_id = upload.inspection_id
        async with self._lock_for(inspection_id):
            if self.engine is None:
                current = self._require(self._mem_inspections.get(inspection_id))
                self._mem_uploads[upload.id] = upload
                self._mem_upload_order.setdefault(inspection_id, []).append(upload.id)
                updated = lifecycle.on_upload_accepted(current, at)
                self._mem_inspections[inspection_id] = updated
                return updated
            async with self.engine.begin() as conn:
                current = self._require(await self._fetch_inspection(conn, inspection_id))
                count_stmt = (
                    select(func.count())
                    .select_from(uploads_table)
                    .where(uploads_table.c.inspection_id == inspection_id)
                )
                position = (await conn.execute(count_stmt)).scalar_one()
                await conn.execute(insert(uploads_table).values(**_upload_row(upload, position)))
                updated = lifecycle.on_upload_accepted(current, at)
                if updated is not current:
                    await self._write_inspection(conn, updated)
            return updated

    async def get_upload(self, upload_id: str) -> Upload | None:
        if self.engine is None:
            return self._mem_uploads.get(upload_id)
        async with self.engine.connect() as conn:
            return await self._fetch_upload(conn, upload_id)

    async def list_uploads(self, inspection_id: str) -> list[Upload]:
        if self.engine is None:
            return [self._mem_uploads[uid] for uid in self._mem_upload_order.get(inspection_id, [])]
        stmt = (
            select(uploads_table)
            .where(uploads_table.c.inspection_id == inspection_id)
            .order_by(uploads_table.c.position.asc())
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [Upload.from_dict(dict(r._mapping)) for r in rows]

    async def list_recent_uploads(self, limit: int = 100) -> list[Upload]:
        if self.engine is None:
            rows = sorted(self._mem_uploads.values(), key=lambda u: u.uploaded_at, reverse=True)
            return rows[:limit]
        stmt = select(uploads_table).order_by(uploads_table.c.uploaded_at.desc()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [Upload.from_dict(dict(r._mapping)) for r in rows]

    async def attach_detection(self, upload_id: str, detection: Detection) -> Upload:
        return await self._set_late_field(upload_id, "detection", detection)

    async def attach_recognized_vin(self, upload_id: str, vin: str) -> Upload:
        return await self._set_late_field(upload_id, "recognized_vin", vin)

    async def _set_late_field(self, upload_id: str, name: str, value: Any) -> Upload:
        # Only ``detection`` and ``recognized_vin`` may change after intake.
        existing = await self.get_upload(upload_id)
        if existing is None:
            raise NotFound("Upload not found")
        async with self._lock_for(existing.inspection_id):
            if self.engine is None:
                updated = replace(self._mem_uploads[upload_id], **{name: value})
                self._mem_uploads[upload_id] = updated
                return updated
            column_value = value.to_dict() if isinstance(value, Detection) else value
            async with self.engine.begin() as conn:
                await conn.execute(
                    update(uploads_table)
                    .where(uploads_table.c.id == upload_id)
                    .values(**{name: column_value})
                )
                updated = await self._fetch_upload(conn, upload_id)
            return self._require(updated, "Upload not found")

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _require(record: Any, message: str = "Inspection not found") -> Any:
        if record is None:
            raise NotFound(message)
        return record

    @staticmethod
    async def _fetch_inspection(conn: AsyncConnection, inspection_id: str) -> Inspection | None:
        stmt = select(inspections_table).where(inspections_table.c.id == inspection_id)
        row = (await conn.execute(stmt)).first()
        return Inspection.from_dict(dict(row._mapping)) if row else None

    @staticmethod
    async def _fetch_upload(conn: AsyncConnection, upload_id: str) -> Upload | None:
        stmt = select(uploads_table).where(uploads_table.c.id == upload_id)
        row = (await conn.execute(stmt)).first()
        return Upload.from_dict(dict(row._mapping)) if row else None

    @staticmethod
    async def _write_inspection(conn: AsyncConnection, inspection: Inspection) -> None:
        values = _inspection_row(inspection)
        values.pop("id")
        await conn.execute(
            update(inspections_table)
            .where(inspections_table.c.id == inspection.id)
            .values(**values)
        )
