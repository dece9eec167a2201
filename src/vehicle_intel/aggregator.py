from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Union

from vehicle_intel.confidence import assess_confidence
from vehicle_intel.data_models import (
    ConfidenceAssessment,
    DataSources,
    DerivedMetrics,
    Explain,
    KmIntelligence,
    VehicleAggregate,
)
from vehicle_intel.indexes import compute_indexes, neutral_indexes
from vehicle_intel.insight import generate_insight
from vehicle_intel.km_analysis import analyze_km_intelligence, detect_odometer_anomaly
from vehicle_intel.normalizers import normalize_all_data_sources
from vehicle_intel.reason_codes import build_reason_codes
from vehicle_intel.risk_analysis import (
    analyze_insurance_damage_correlation,
    analyze_obd_intelligence,
    calculate_insurance_risk,
    calculate_mechanical_risk,
    calculate_structural_risk,
)
from vehicle_intel.service_discipline import analyze_service_discipline, service_gap_score

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 5.0


class VehicleDataProvider(Protocol):
    async def fetch_all(self, vehicle_id: str, vin: str, plate: str) -> Mapping[str, Any]:
        ...


@dataclass(frozen=True)
class BuildSuccess:
    aggregate: VehicleAggregate


@dataclass(frozen=True)
class BuildFailure:
    reason: str


BuildResult = Union[BuildSuccess, BuildFailure]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def reference_day(moment: datetime) -> datetime:
    """Start of the UTC day containing ``moment``; all age-based analyzers use it."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def derive_metrics(data_sources: DataSources, as_of: datetime) -> DerivedMetrics:
    discipline = analyze_service_discipline(data_sources.service_records, data_sources.km_history, as_of)
    obd = analyze_obd_intelligence(data_sources.obd_records)
    return DerivedMetrics(
        odometer_anomaly=detect_odometer_anomaly(data_sources.km_history),
        km_intelligence=analyze_km_intelligence(data_sources.km_history),
        service_gap_score=service_gap_score(discipline),
        service_discipline=discipline,
        structural_risk=calculate_structural_risk(data_sources.damage_records, as_of),
        mechanical_risk=calculate_mechanical_risk(obd),
        insurance_risk=calculate_insurance_risk(data_sources.insurance_records, as_of),
        obd_intelligence=obd,
        insurance_damage_correlation=analyze_insurance_damage_correlation(
            data_sources.insurance_records, data_sources.damage_records
        ),
    )


def assemble_aggregate(
    vehicle_id: str,
    vin: str,
    plate: str,
    data_sources: DataSources,
    timestamp: datetime,
) -> VehicleAggregate:
    derived = derive_metrics(data_sources, reference_day(timestamp))
    indexes = compute_indexes(derived)
    return VehicleAggregate(
        vehicle_id=vehicle_id,
        vin=vin,
        plate=plate,
        timestamp=timestamp,
        data_sources=data_sources,
        derived=derived,
        indexes=indexes,
        confidence=assess_confidence(data_sources, derived),
        insight_summary=generate_insight(derived, indexes, data_sources),
        explain=Explain(reasons=build_reason_codes(derived, data_sources)),
    )


def fallback_aggregate(
    vehicle_id: str,
    vin: str,
    plate: str,
    timestamp: datetime,
    error: str,
) -> VehicleAggregate:
    return VehicleAggregate(
        vehicle_id=vehicle_id,
        vin=vin,
        plate=plate,
        timestamp=timestamp,
        derived=DerivedMetrics(km_intelligence=KmIntelligence(usage_class="normal")),
        indexes=neutral_indexes(),
        confidence=ConfidenceAssessment(explanation="No data collected"),
        insight_summary=f"Vehicle data could not be collected ({error}). Please retry.",
        status="fallback",
        error=error,
    )


class VehicleAggregator:
    def __init__(
        self,
        provider: VehicleDataProvider,
        *,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.clock = clock

    async def try_build(self, vehicle_id: str, vin: str = "", plate: str = "") -> BuildResult:
        try:
            raw = await asyncio.wait_for(
                self.provider.fetch_all(vehicle_id, vin, plate),
                timeout=self.fetch_timeout_seconds,
            )
        except TimeoutError:
            logger.warning("Provider fetch timed out for vehicle %s", vehicle_id)
            return BuildFailure(reason=f"provider timed out after {self.fetch_timeout_seconds}s")
        except Exception as exc:
            logger.warning("Provider fetch failed for vehicle %s: %s", vehicle_id, exc)
            return BuildFailure(reason=f"provider error: {exc}")

        try:
            data_sources = normalize_all_data_sources(raw)
            aggregate = assemble_aggregate(vehicle_id, vin, plate, data_sources, self.clock())
        except Exception as exc:
            logger.exception("Aggregate build failed for vehicle %s", vehicle_id)
            return BuildFailure(reason=f"{type(exc).__name__}: {exc}")

        logger.debug(
            "Built aggregate",
            extra={"extra_data": {"vehicle_id": vehicle_id, **data_sources.counts()}},
        )
        return BuildSuccess(aggregate=aggregate)

    async def build(self, vehicle_id: str, vin: str = "", plate: str = "") -> VehicleAggregate:
        result = await self.try_build(vehicle_id, vin, plate)
        if isinstance(result, BuildSuccess):
            return result.aggregate
        logger.warning(
            "Returning fallback aggregate",
            extra={"extra_data": {"vehicle_id": vehicle_id, "reason": result.reason}},
        )
        return fallback_aggregate(vehicle_id, vin, plate, self.clock(), result.reason)
