from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from pydantic import BaseModel

from service.logging_config import configure_logging, correlation_id
from service.messaging import KafkaBus
from service.providers import get_vehicle_data_provider
from service.settings import ServiceSettings
from service.storage import PostgresStore, RedisCache
from service.vehicle_store import VehicleStore
from service.vio_orchestrator import VioOrchestrator
from vehicle_intel.aggregator import VehicleAggregator
from vehicle_intel.data_models import VehicleAggregate
from vehicle_intel.insight import generate_status_badge, generate_summary_line

logger = logging.getLogger(__name__)


# ── Response Models ─────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


class RebuildRequestedResponse(BaseModel):
    scheduled: bool
    vehicle_id: str


# ── Metrics ─────────────────────────────────────────────────────────

_counters: dict[str, int] = defaultdict(int)
_latencies: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _latencies[name].append(seconds)
    _counters[f"{name}_count"] += 1


def _aggregate_payload(aggregate: VehicleAggregate) -> dict[str, Any]:
    payload = aggregate.to_json_dict()
    payload["statusBadge"] = generate_status_badge(
        aggregate.indexes.trust_index,
        aggregate.derived.structural_risk,
        aggregate.derived.mechanical_risk,
        aggregate.derived.odometer_anomaly,
    )
    payload["summaryLine"] = generate_summary_line(
        aggregate.indexes.trust_index,
        aggregate.indexes.reliability_index,
        len(aggregate.data_sources.damage_records),
        len(aggregate.data_sources.service_records),
    )
    return payload


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    aggregator = VehicleAggregator(
        get_vehicle_data_provider(settings),
        fetch_timeout_seconds=settings.provider_timeout_seconds,
    )
    vehicles = VehicleStore(cache, aggregator, ttl_seconds=settings.aggregate_cache_ttl_seconds)
    orchestrator = VioOrchestrator(store, kafka, actor_id=settings.audit_actor_id)

    async def _rebuild_and_generate(vehicle_id: str, vin: str, plate: str) -> dict[str, Any]:
        aggregate = await vehicles.rebuild(vehicle_id, vin, plate)
        _counters[f"build_{aggregate.status}"] += 1
        result = await orchestrator.generate_and_store(aggregate)
        _counters["vio_ok" if result.ok else "vio_failed"] += 1
        await kafka.publish_aggregate(vehicle_id, aggregate.status, aggregate.indexes.model_dump(by_alias=True))
        return {
            "aggregate": _aggregate_payload(aggregate),
            "vio": {"ok": result.ok, "error": result.error},
        }

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        stop_event = asyncio.Event()
        await cache.connect()
        await store.connect()
        await kafka.connect()

        async def _rebuild_handler(event: dict[str, Any]) -> None:
            vehicle_id = event.get("vehicleId")
            if not vehicle_id:
                logger.warning("Ignoring rebuild request without vehicleId")
                return
            await _rebuild_and_generate(vehicle_id, event.get("vin", ""), event.get("plate", ""))

        consumer_task = asyncio.create_task(kafka.consume_rebuild_requests_forever(_rebuild_handler, stop_event))
        try:
            yield
        finally:
            stop_event.set()
            consumer_task.cancel()
            with suppress(asyncio.CancelledError):
                await consumer_task
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Vehicle Intelligence API", version="1.0.0", lifespan=lifespan)

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
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Vehicle Aggregates ──────────────────────────────────────────

    @app.get("/vehicles/{vehicle_id}/aggregate")
    async def get_aggregate(vehicle_id: str, vin: str = "", plate: str = "") -> dict[str, Any]:
        t0 = time.monotonic()
        aggregate = await vehicles.get_or_build(vehicle_id, vin, plate)
        _record_latency("aggregate", time.monotonic() - t0)
        return _aggregate_payload(aggregate)

    @app.post("/vehicles/{vehicle_id}/rebuild")
    async def rebuild_vehicle(vehicle_id: str, vin: str = "", plate: str = "") -> dict[str, Any]:
        t0 = time.monotonic()
        body = await _rebuild_and_generate(vehicle_id, vin, plate)
        _record_latency("rebuild", time.monotonic() - t0)
        return body

    @app.post("/vehicles/{vehicle_id}/rebuild/async", response_model=RebuildRequestedResponse)
    async def request_rebuild(vehicle_id: str, vin: str = "", plate: str = "") -> RebuildRequestedResponse:
        await kafka.request_rebuild(vehicle_id, vin, plate)
        return RebuildRequestedResponse(scheduled=True, vehicle_id=vehicle_id)

    @app.delete("/vehicles/{vehicle_id}/cache")
    async def invalidate_vehicle(vehicle_id: str) -> dict[str, Any]:
        await vehicles.invalidate(vehicle_id)
        return {"vehicleId": vehicle_id, "invalidated": True}

    @app.get("/vehicles/cached")
    async def cached_vehicles() -> dict[str, Any]:
        ids = await vehicles.cached_vehicle_ids()
        return {"count": len(ids), "vehicleIds": ids}

    # ── VIO ─────────────────────────────────────────────────────────

    @app.post("/vehicles/{vehicle_id}/vio")
    async def generate_vio(vehicle_id: str, vin: str = "", plate: str = "") -> dict[str, Any]:
        aggregate = await vehicles.get_or_build(vehicle_id, vin, plate)
        result = await orchestrator.generate_and_store(aggregate)
        _counters["vio_ok" if result.ok else "vio_failed"] += 1
        if not result.ok:
            return {"ok": False, "error": result.error}
        return {"ok": True, "vio": result.vio.to_json_dict()}

    @app.get("/vehicles/{vehicle_id}/vio")
    async def get_vio(vehicle_id: str) -> dict[str, Any]:
        document = await store.get_vio(vehicle_id)
        if document is None:
            raise HTTPException(status_code=404, detail="VIO not found")
        return document

    @app.get("/vehicles/{vehicle_id}/vio/status")
    async def get_vio_status(vehicle_id: str) -> dict[str, Any]:
        last = await orchestrator.get_last_generation_status(vehicle_id)
        if last is None:
            raise HTTPException(status_code=404, detail="No VIO generation recorded")
        return last

    @app.get("/vehicles/{vehicle_id}/audit")
    async def get_audit(vehicle_id: str, limit: int = Query(20, ge=1, le=100)) -> dict[str, Any]:
        entries = await store.audit_by_vehicle(vehicle_id, limit=limit)
        return {"count": len(entries), "entries": entries}

    @app.get("/audit")
    async def get_recent_audit(limit: int = Query(50, ge=1, le=100)) -> dict[str, Any]:
        entries = await store.recent_audit(limit=limit)
        return {"count": len(entries), "entries": entries}

    # ── Metrics ─────────────────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_latencies.get("aggregate", []))
        return {
            "counters": dict(_counters),
            "aggregate_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p95_ms": round(latencies[int(len(latencies) * 0.95)] * 1000, 1) if latencies else 0,
            },
        }

    return app
