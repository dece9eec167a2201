from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable

from pydantic import ValidationError

from service.logging_config import vehicle_log_context
from service.storage import RedisCache
from vehicle_intel.aggregator import VehicleAggregator, utc_now
from vehicle_intel.data_models import VehicleAggregate

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86_400


class VehicleStore:
    """TTL-boxed cache of VehicleAggregate snapshots keyed by vehicle id.

    Entries are stored as ``{"data": <aggregate json>, "timestamp": <epoch seconds>}``.
    Freshness is judged against the entry timestamp with the injected clock; the
    backend TTL only reclaims space. Nothing raised by the cache backend or the
    aggregator crosses this boundary.
    """

    def __init__(
        self,
        cache: RedisCache,
        aggregator: VehicleAggregator,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self.aggregator = aggregator
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _vehicle_lock(self, vehicle_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(vehicle_id, asyncio.Lock())
        self._lock_users[vehicle_id] = self._lock_users.get(vehicle_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[vehicle_id] -= 1
            if not self._lock_users[vehicle_id]:
                del self._lock_users[vehicle_id]
                del self._locks[vehicle_id]

    async def _read_fresh(self, vehicle_id: str) -> VehicleAggregate | None:
        try:
            entry = await self.cache.get_json(vehicle_id)
        except Exception:
            logger.warning("Cache read failed for vehicle %s", vehicle_id)
            return None
        if not entry:
            return None
        age = self.clock().timestamp() - float(entry.get("timestamp", 0))
        if age > self.ttl_seconds:
            logger.debug("Cache entry expired", extra={"extra_data": {"vehicle_id": vehicle_id, "age_s": age}})
            return None
        try:
            return VehicleAggregate.model_validate(entry["data"])
        except (KeyError, ValidationError):
            logger.warning("Discarding unreadable cache entry for vehicle %s", vehicle_id)
            return None

    async def _write(self, aggregate: VehicleAggregate) -> None:
        if aggregate.status != "success":
            return
        entry = {"data": aggregate.to_json_dict(), "timestamp": self.clock().timestamp()}
        try:
            await self.cache.set_json(aggregate.vehicle_id, entry, ttl_seconds=self.ttl_seconds)
        except Exception:
            logger.warning("Cache write failed for vehicle %s", aggregate.vehicle_id)

    async def _build_and_write(self, vehicle_id: str, vin: str, plate: str) -> VehicleAggregate:
        aggregate = await self.aggregator.build(vehicle_id, vin, plate)
        await self._write(aggregate)
        return aggregate

    async def get_or_build(self, vehicle_id: str, vin: str = "", plate: str = "") -> VehicleAggregate:
        with vehicle_log_context(vehicle_id):
            cached = await self._read_fresh(vehicle_id)
            if cached is not None:
                return cached
            async with self._vehicle_lock(vehicle_id):
                # another caller may have finished the build while we waited
                cached = await self._read_fresh(vehicle_id)
                if cached is not None:
                    return cached
                return await self._build_and_write(vehicle_id, vin, plate)

    async def rebuild(self, vehicle_id: str, vin: str = "", plate: str = "") -> VehicleAggregate:
        with vehicle_log_context(vehicle_id):
            async with self._vehicle_lock(vehicle_id):
                return await self._build_and_write(vehicle_id, vin, plate)

    async def invalidate(self, vehicle_id: str) -> None:
        try:
            await self.cache.delete(vehicle_id)
        except Exception:
            logger.warning("Cache invalidate failed for vehicle %s", vehicle_id)

    async def clear(self) -> None:
        try:
            await self.cache.clear()
        except Exception:
            logger.warning("Cache clear failed")

    async def cached_vehicle_ids(self) -> list[str]:
        try:
            return await self.cache.keys()
        except Exception:
            logger.warning("Cache key listing failed")
            return []
