"""Vehicle Intelligence Output (VIO).

The VIO is the versioned, external projection of a VehicleAggregate. Consumers
must check ``version`` and ``schemaVersion`` before reading ``indexes`` or
``signals``; any change to the field sets below requires a new schema version
in ``SCHEMA_FIELDS``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from vehicle_intel.aggregator import reference_day, utc_now
from vehicle_intel.config import EVIDENCE_SOURCE_NAMES, VioConfig
from vehicle_intel.confidence import adjust_index_confidence, adjust_signal_confidence
from vehicle_intel.data_models import FrozenModel, KmRecord, ServiceRecord, VehicleAggregate
from vehicle_intel.km_analysis import chronological
from vehicle_intel.risk_analysis import recent_insurance_records
from vehicle_intel.service_discipline import km_at_or_before


SignalSeverity = Literal["low", "medium", "high"]

SCHEMA_FIELDS: dict[str, dict[str, frozenset[str]]] = {
    "1.1": {
        "IntelligenceIndex": frozenset(
            {"key", "label", "value", "scale", "confidence", "evidenceSources", "meta"}
        ),
        "IntelligenceSignal": frozenset(
            {"code", "severity", "confidence", "evidenceSources", "evidenceCount", "meta"}
        ),
        "PartLifeFeatures": frozenset(
            {"avgDailyKm", "kmSlope", "lastServiceKm", "lastServiceDate", "obdFaultCount"}
        ),
        "VehicleIntelligenceOutput": frozenset(
            {
                "vehicleId", "version", "schemaVersion", "generatedAt",
                "indexes", "signals", "partLifeFeatures", "summary",
            }
        ),
    },
}


class IntelligenceIndex(FrozenModel):
    key: str
    label: str | None = None
    value: int = Field(ge=0, le=100)
    scale: Literal["0-100"] = "0-100"
    confidence: int = Field(ge=0, le=100)
    evidence_sources: tuple[str, ...] = ()
    meta: dict[str, Any] | None = None


class IntelligenceSignal(FrozenModel):
    code: str
    severity: SignalSeverity
    confidence: int = Field(ge=0, le=100)
    evidence_sources: tuple[str, ...] = ()
    evidence_count: int | None = None
    meta: dict[str, Any] | None = None


class PartLifeFeatures(FrozenModel):
    avg_daily_km: int | None = None
    km_slope: int | None = None
    last_service_km: int | None = None
    last_service_date: datetime | None = None
    obd_fault_count: int = 0


class VehicleIntelligenceOutput(FrozenModel):
    vehicle_id: str
    version: str
    schema_version: str
    generated_at: datetime
    indexes: tuple[IntelligenceIndex, ...]
    signals: tuple[IntelligenceSignal, ...]
    part_life_features: PartLifeFeatures
    summary: str

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _sources_with_data(aggregate: VehicleAggregate, sources: tuple[str, ...]) -> tuple[str, ...]:
    counts = aggregate.data_sources.counts()
    return tuple(EVIDENCE_SOURCE_NAMES[s] for s in sources if counts[s] > 0)


# ── Indexes ─────────────────────────────────────────────────────────

def build_indexes(aggregate: VehicleAggregate, config: VioConfig) -> list[IntelligenceIndex]:
    derived = aggregate.derived
    conf = aggregate.confidence
    counts = aggregate.data_sources.counts()
    values = {
        "trustIndex": aggregate.indexes.trust_index,
        "reliabilityIndex": aggregate.indexes.reliability_index,
        "maintenanceDiscipline": aggregate.indexes.maintenance_discipline,
        "structuralRisk": derived.structural_risk,
        "mechanicalRisk": derived.mechanical_risk,
        "insuranceRisk": derived.insurance_risk,
    }

    out: list[IntelligenceIndex] = []
    for key, value in values.items():
        supporting = config.index_sources[key]
        evidence = sum(counts[s] for s in supporting)
        confidence = adjust_index_confidence(key, conf.overall_confidence, aggregate.data_sources, derived)
        reason = (
            f"coverage {conf.coverage_score}%, consistency {conf.consistency_score}%, "
            f"{evidence} supporting records"
        )
        out.append(
            IntelligenceIndex(
                key=key,
                label=config.index_labels[key],
                value=value,
                confidence=confidence,
                evidence_sources=_sources_with_data(aggregate, supporting),
                meta={"confidenceReason": reason},
            )
        )
    return out


# ── Signals ─────────────────────────────────────────────────────────

def _signal(
    code: str,
    severity: SignalSeverity,
    base_confidence: int,
    sources: tuple[str, ...],
    evidence_count: int,
    **meta: Any,
) -> IntelligenceSignal:
    names = tuple(EVIDENCE_SOURCE_NAMES[s] for s in sources)
    meta["confidenceReason"] = f"{evidence_count} supporting records from {', '.join(names)}"
    return IntelligenceSignal(
        code=code,
        severity=severity,
        confidence=adjust_signal_confidence(base_confidence, severity, evidence_count),
        evidence_sources=names,
        evidence_count=evidence_count,
        meta=meta,
    )


def _tier(value: int, high: int, medium: int) -> SignalSeverity:
    if value > high:
        return "high"
    if value > medium:
        return "medium"
    return "low"


def build_signals(
    aggregate: VehicleAggregate,
    config: VioConfig,
    as_of: datetime,
) -> list[IntelligenceSignal]:
    derived = aggregate.derived
    sources = aggregate.data_sources
    counts = sources.counts()
    base = aggregate.confidence.overall_confidence
    km = derived.km_intelligence
    signals: list[IntelligenceSignal] = []

    if derived.odometer_anomaly:
        signals.append(
            _signal(
                "ODOMETER_ANOMALY_DETECTED", "high",
                config.odometer_anomaly_base_confidence, ("km",), counts["km"],
            )
        )

    if km.has_rollback:
        signals.append(
            _signal(
                "KM_ROLLBACK_DETECTED",
                _tier(km.rollback_severity, config.rollback_high_threshold, config.rollback_medium_threshold),
                base, ("km",), km.rollback_evidence_count,
                rollbackSeverity=km.rollback_severity,
            )
        )

    if derived.structural_risk > config.structural_high_threshold:
        signals.append(
            _signal(
                "HIGH_STRUCTURAL_RISK", "high", base, ("damage",), counts["damage"],
                structuralRisk=derived.structural_risk,
            )
        )
    elif derived.structural_risk > config.structural_moderate_threshold:
        signals.append(
            _signal(
                "MODERATE_STRUCTURAL_RISK", "medium", base, ("damage",), counts["damage"],
                structuralRisk=derived.structural_risk,
            )
        )

    if derived.mechanical_risk > config.mechanical_signal_threshold:
        severity: SignalSeverity = "high" if derived.mechanical_risk > config.mechanical_high_threshold else "medium"
        signals.append(
            _signal(
                "MECHANICAL_RISK_PRESENT", severity, base, ("obd",), counts["obd"],
                mechanicalRisk=derived.mechanical_risk,
                repeatedFaults=list(derived.obd_intelligence.repeated_faults),
            )
        )

    if derived.service_gap_score > config.service_gap_signal_threshold:
        severity = "high" if derived.service_gap_score > config.service_gap_high_threshold else "medium"
        signals.append(
            _signal(
                "SERVICE_GAP_DETECTED", severity, base, ("service", "km"), counts["service"],
                serviceGapScore=derived.service_gap_score,
            )
        )

    if derived.insurance_risk > config.insurance_signal_threshold:
        recent = recent_insurance_records(sources.insurance_records, as_of)
        evidence = sum(1 for r in recent if r.type in ("claim", "lapse"))
        severity = "high" if derived.insurance_risk > config.insurance_high_threshold else "medium"
        signals.append(
            _signal(
                "INSURANCE_RISK_DETECTED", severity, base, ("insurance",), evidence,
                insuranceRisk=derived.insurance_risk,
                claimCount=derived.insurance_damage_correlation.claim_count,
            )
        )

    if aggregate.indexes.maintenance_discipline < config.low_maintenance_threshold:
        signals.append(
            _signal(
                "LOW_MAINTENANCE_DISCIPLINE", "medium", base, ("service",), counts["service"],
                maintenanceDiscipline=aggregate.indexes.maintenance_discipline,
            )
        )

    return signals


# ── Part-life Features ──────────────────────────────────────────────

def _month_diff(start: datetime, end: datetime) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def _km_slope(readings: list[KmRecord]) -> int | None:
    if len(readings) < 2:
        return None
    months = _month_diff(readings[0].date, readings[-1].date)
    if months <= 0:
        return 0
    return round((readings[-1].km - readings[0].km) / months)


def _last_service(services: tuple[ServiceRecord, ...]) -> ServiceRecord | None:
    return max(services, key=lambda r: r.date) if services else None


def extract_part_life_features(aggregate: VehicleAggregate) -> PartLifeFeatures:
    sources = aggregate.data_sources
    readings = chronological(sources.km_history)
    last_service = _last_service(sources.service_records)
    last_service_km = None
    if last_service is not None:
        reading = km_at_or_before(readings, last_service.date)
        last_service_km = reading.km if reading is not None else None
    return PartLifeFeatures(
        avg_daily_km=round(aggregate.derived.km_intelligence.avg_daily_km) if readings else None,
        km_slope=_km_slope(readings),
        last_service_km=last_service_km,
        last_service_date=last_service.date if last_service is not None else None,
        obd_fault_count=len(sources.obd_records),
    )


def build_vio(
    aggregate: VehicleAggregate,
    *,
    config: VioConfig | None = None,
    generated_at: datetime | None = None,
) -> VehicleIntelligenceOutput:
    config = config or VioConfig()
    generated_at = generated_at or utc_now()
    # signals use the same reference day as the aggregate build
    as_of = reference_day(aggregate.timestamp)
    return VehicleIntelligenceOutput(
        vehicle_id=aggregate.vehicle_id,
        version=config.version,
        schema_version=config.schema_version,
        generated_at=generated_at,
        indexes=tuple(build_indexes(aggregate, config)),
        signals=tuple(build_signals(aggregate, config, as_of)),
        part_life_features=extract_part_life_features(aggregate),
        summary=aggregate.insight_summary,
    )
