from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from service.messaging import KafkaBus
from service.storage import PostgresStore
from vehicle_intel.aggregator import utc_now
from vehicle_intel.config import VioConfig
from vehicle_intel.data_models import VehicleAggregate
from vehicle_intel.vio import VehicleIntelligenceOutput, build_vio

logger = logging.getLogger(__name__)

VIO_GENERATED = "VIO_GENERATED"
VIO_FAILED = "VIO_FAILED"


@dataclass(frozen=True)
class VioGenerationResult:
    ok: bool
    vio: VehicleIntelligenceOutput | None = None
    error: str | None = None


class VioOrchestrator:
    def __init__(
        self,
        store: PostgresStore,
        kafka: KafkaBus | None = None,
        *,
        config: VioConfig | None = None,
        actor_id: str = "system",
        clock: Callable[[], datetime] = utc_now,
        builder: Callable[..., VehicleIntelligenceOutput] = build_vio,
    ) -> None:
        self.store = store
        self.kafka = kafka
        self.config = config or VioConfig()
        self.actor_id = actor_id
        self.clock = clock
        self.builder = builder

    async def _audit(self, action: str, at: datetime, meta: dict[str, Any]) -> dict[str, Any]:
        stored = await self.store.append_audit(
            {"action": action, "actorId": self.actor_id, "at": at, "meta": meta}
        )
        if self.kafka is not None:
            await self.kafka.publish_audit(stored)
        return stored

    async def generate_and_store(self, aggregate: VehicleAggregate) -> VioGenerationResult:
        at = self.clock()
        try:
            vio = self.builder(aggregate, config=self.config, generated_at=at)
            await self.store.save_vio(vio.to_json_dict())
            await self.store.record_status(aggregate.vehicle_id, status="ok", at=at)
            await self._audit(
                VIO_GENERATED,
                at,
                {
                    "vehicleId": aggregate.vehicle_id,
                    "plate": aggregate.plate,
                    "schemaVersion": vio.schema_version,
                    "generatedAt": vio.generated_at.isoformat(),
                    "indexCount": len(vio.indexes),
                    "signalCount": len(vio.signals),
                    "dataSourceCount": aggregate.data_sources.populated_source_count(),
                },
            )
        except Exception as exc:
            logger.exception("VIO generation failed for vehicle %s", aggregate.vehicle_id)
            error = str(exc) or type(exc).__name__
            try:
                await self.store.record_status(aggregate.vehicle_id, status="failed", at=at, error=error)
                await self._audit(
                    VIO_FAILED,
                    at,
                    {
                        "vehicleId": aggregate.vehicle_id,
                        "plate": aggregate.plate,
                        "error": error,
                        "errorType": type(exc).__name__,
                    },
                )
            except Exception:
                logger.exception("Could not record VIO failure for vehicle %s", aggregate.vehicle_id)
            return VioGenerationResult(ok=False, error=error)

        return VioGenerationResult(ok=True, vio=vio)

    async def get_last_generation_status(self, vehicle_id: str) -> dict[str, Any] | None:
        row = await self.store.get_status(vehicle_id)
        if row is None:
            return None
        status = {"status": row["status"], "at": row["at"].isoformat()}
        if row.get("error"):
            status["error"] = row["error"]
        return status
