from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import JSON, Column, DateTime, MetaData, String, Table, Text, delete, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


metadata = MetaData()

vio_documents_table = Table(
    "vio_documents",
    metadata,
    Column("vehicle_id", String(64), primary_key=True),
    Column("version", String(16), nullable=False),
    Column("schema_version", String(16), nullable=False),
    Column("generated_at", DateTime(timezone=True), nullable=False),
    Column("document_json", JSON, nullable=False),
)

vio_status_table = Table(
    "vio_generation_status",
    metadata,
    Column("vehicle_id", String(64), primary_key=True),
    Column("status", String(16), nullable=False),
    Column("at", DateTime(timezone=True), nullable=False),
    Column("error", Text, nullable=True),
)

audit_log_table = Table(
    "audit_log",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("action", String(32), nullable=False, index=True),
    Column("actor_id", String(64), nullable=False),
    Column("vehicle_id", String(64), nullable=True, index=True),
    Column("at", DateTime(timezone=True), nullable=False),
    Column("meta_json", JSON, nullable=False, default=dict),
)


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "vehicle_aggregate") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _strip_key(self, full_key: str) -> str:
        return full_key[len(self.namespace) + 1:]

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

    def _mem_expired(self, full_key: str) -> bool:
        now = asyncio.get_running_loop().time()
        if full_key in self._expiry and now > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return True
        return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        if self._mem_expired(full_key):
            return None
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
        self._expiry[full_key] = asyncio.get_running_loop().time() + ttl_seconds

    async def delete(self, key: str) -> None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                await self._client.delete(full_key)
            except Exception:
                pass
        self._mem.pop(full_key, None)
        self._expiry.pop(full_key, None)

    async def keys(self) -> list[str]:
        if self._client is not None:
            try:
                return sorted(
                    [self._strip_key(k) async for k in self._client.scan_iter(match=f"{self.namespace}:*")]
                )
            except Exception:
                return []
        live = [k for k in list(self._mem) if not self._mem_expired(k)]
        return sorted(self._strip_key(k) for k in live)

    async def clear(self) -> None:
        for key in await self.keys():
            await self.delete(key)
        self._mem.clear()
        self._expiry.clear()


class PostgresStore:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_vio: dict[str, dict[str, Any]] = {}
        self._mem_status: dict[str, dict[str, Any]] = {}
        self._mem_audit: list[dict[str, Any]] = []

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

    # ── VIO documents ───────────────────────────────────────────────

    async def save_vio(self, document: dict[str, Any]) -> None:
        row = {
            "vehicle_id": document["vehicleId"],
            "version": document["version"],
            "schema_version": document["schemaVersion"],
            "generated_at": datetime.fromisoformat(document["generatedAt"]),
            "document_json": document,
        }
        if self.engine is None:
            self._mem_vio[row["vehicle_id"]] = row
            return
        async with self.engine.begin() as conn:
            await conn.execute(delete(vio_documents_table).where(vio_documents_table.c.vehicle_id == row["vehicle_id"]))
            await conn.execute(insert(vio_documents_table).values(**row))

    async def get_vio(self, vehicle_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_vio.get(vehicle_id)
            return None if row is None else row["document_json"]
        stmt = select(vio_documents_table.c.document_json).where(vio_documents_table.c.vehicle_id == vehicle_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return None if row is None else row.document_json

    # ── Generation status ───────────────────────────────────────────

    async def record_status(
        self,
        vehicle_id: str,
        *,
        status: str,
        at: datetime,
        error: str | None = None,
    ) -> None:
        row = {"vehicle_id": vehicle_id, "status": status, "at": at, "error": error}
        if self.engine is None:
            self._mem_status[vehicle_id] = row
            return
        async with self.engine.begin() as conn:
            await conn.execute(delete(vio_status_table).where(vio_status_table.c.vehicle_id == vehicle_id))
            await conn.execute(insert(vio_status_table).values(**row))

    async def get_status(self, vehicle_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_status.get(vehicle_id)
            return None if row is None else dict(row)
        stmt = select(vio_status_table).where(vio_status_table.c.vehicle_id == vehicle_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    # ── Audit log ───────────────────────────────────────────────────

    async def append_audit(self, entry: dict[str, Any]) -> dict[str, Any]:
        meta = dict(entry.get("meta") or {})
        stored = {
            "id": str(uuid4()),
            "action": entry["action"],
            "actor_id": entry.get("actorId", "system"),
            "vehicle_id": entry.get("vehicleId") or meta.get("vehicleId"),
            "at": entry.get("at") or datetime.now(timezone.utc),
            "meta_json": meta,
        }
        if self.engine is None:
            self._mem_audit.append(stored)
        else:
            async with self.engine.begin() as conn:
                await conn.execute(insert(audit_log_table).values(**stored))
        return _audit_entry(stored)

    async def audit_by_vehicle(self, vehicle_id: str, limit: int = 100) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        if self.engine is None:
            rows = [r for r in self._mem_audit if r["vehicle_id"] == vehicle_id]
            return [_audit_entry(r) for r in reversed(rows[-limit:])]
        stmt = (
            select(audit_log_table)
            .where(audit_log_table.c.vehicle_id == vehicle_id)
            .order_by(audit_log_table.c.at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_audit_entry(dict(r._mapping)) for r in rows]

    async def recent_audit(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        if self.engine is None:
            return [_audit_entry(r) for r in reversed(self._mem_audit[-limit:])]
        stmt = select(audit_log_table).order_by(audit_log_table.c.at.desc()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_audit_entry(dict(r._mapping)) for r in rows]


def _audit_entry(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "action": row["action"],
        "actorId": row["actor_id"],
        "at": row["at"].isoformat(),
        "meta": row["meta_json"],
    }
