from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


InsuranceType = Literal["claim", "policy", "lapse", "inquiry", "renewal"]
DamageSeverity = Literal["minor", "major"]
UsageClass = Literal["low", "normal", "high"]
ObdCategory = Literal["engine", "transmission", "emission", "electrical", "brake", "other"]
ObdSeverity = Literal["low", "medium", "high"]
MismatchType = Literal["none", "claims_without_damage", "damage_without_claims"]
ReasonSeverity = Literal["info", "warn", "high"]
BuildStatus = Literal["success", "fallback"]

OBD_CATEGORIES: tuple[str, ...] = ("engine", "transmission", "emission", "electrical", "brake", "other")
REASON_TARGETS: tuple[str, ...] = (
    "trust_index",
    "reliability_index",
    "maintenance_discipline",
    "structural_risk",
    "mechanical_risk",
    "insurance_risk",
)

Score = int


def clamp_score(value: float) -> int:
    return max(0, min(100, int(round(value))))


def days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 86_400


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


# ── Canonical Records ───────────────────────────────────────────────

class KmRecord(FrozenModel):
    date: datetime
    km: int = Field(ge=0)


class ObdRecord(FrozenModel):
    date: datetime
    fault_code: str = Field(min_length=1)


class InsuranceRecord(FrozenModel):
    date: datetime
    type: InsuranceType


class DamageRecord(FrozenModel):
    date: datetime
    severity: DamageSeverity
    description: str


class ServiceRecord(FrozenModel):
    date: datetime
    type: str
    description: str | None = None


class DataSources(FrozenModel):
    km_history: tuple[KmRecord, ...] = ()
    obd_records: tuple[ObdRecord, ...] = ()
    insurance_records: tuple[InsuranceRecord, ...] = ()
    damage_records: tuple[DamageRecord, ...] = ()
    service_records: tuple[ServiceRecord, ...] = ()

    def counts(self) -> dict[str, int]:
        return {
            "km": len(self.km_history),
            "obd": len(self.obd_records),
            "insurance": len(self.insurance_records),
            "damage": len(self.damage_records),
            "service": len(self.service_records),
        }

    def populated_source_count(self) -> int:
        return sum(1 for n in self.counts().values() if n > 0)


# ── Derived Metrics ─────────────────────────────────────────────────

class KmIntelligence(FrozenModel):
    has_rollback: bool = False
    rollback_severity: Score = Field(default=0, ge=0, le=100)
    rollback_evidence_count: int = Field(default=0, ge=0)
    volatility_score: Score = Field(default=0, ge=0, le=100)
    usage_class: UsageClass = "normal"
    avg_daily_km: float = Field(default=0.0, ge=0)


class ServiceDiscipline(FrozenModel):
    time_gap_score: Score = Field(default=0, ge=0, le=100)
    km_gap_score: Score = Field(default=0, ge=0, le=100)
    regularity_score: Score = Field(default=0, ge=0, le=100)
    discipline_score: Score = Field(default=0, ge=0, le=100)
    last_service_date: datetime | None = None
    days_since_last_service: int | None = None
    estimated_km_since_last_service: int | None = None
    service_count: int = Field(default=0, ge=0)
    recent_service_count: int = Field(default=0, ge=0)


def _empty_breakdown() -> dict[str, int]:
    return {category: 0 for category in OBD_CATEGORIES}


class ObdIntelligence(FrozenModel):
    total_fault_count: int = Field(default=0, ge=0)
    unique_fault_codes: int = Field(default=0, ge=0)
    category_breakdown: dict[str, int] = Field(default_factory=_empty_breakdown)
    highest_severity: ObdSeverity = "low"
    repeated_faults: tuple[str, ...] = ()
    severity_score: Score = Field(default=0, ge=0, le=100)


class InsuranceDamageCorrelation(FrozenModel):
    claim_count: int = Field(default=0, ge=0)
    damage_count: int = Field(default=0, ge=0)
    matched_events: int = Field(default=0, ge=0)
    mismatch_type: MismatchType = "none"
    correlation_score: Score = Field(default=0, ge=0, le=100)


class DerivedMetrics(FrozenModel):
    odometer_anomaly: bool = False
    km_intelligence: KmIntelligence = Field(default_factory=KmIntelligence)
    service_gap_score: Score = Field(default=0, ge=0, le=100)
    service_discipline: ServiceDiscipline = Field(default_factory=ServiceDiscipline)
    structural_risk: Score = Field(default=0, ge=0, le=100)
    mechanical_risk: Score = Field(default=0, ge=0, le=100)
    insurance_risk: Score = Field(default=0, ge=0, le=100)
    obd_intelligence: ObdIntelligence = Field(default_factory=ObdIntelligence)
    insurance_damage_correlation: InsuranceDamageCorrelation = Field(default_factory=InsuranceDamageCorrelation)


class IntelligenceIndexes(FrozenModel):
    trust_index: Score = Field(ge=0, le=100)
    reliability_index: Score = Field(ge=0, le=100)
    maintenance_discipline: Score = Field(ge=0, le=100)


# ── Explainability ──────────────────────────────────────────────────

class ReasonCode(FrozenModel):
    code: str
    severity: ReasonSeverity
    message: str
    meta: dict[str, Any] = Field(default_factory=dict)


class ReasonCodes(FrozenModel):
    trust_index: tuple[ReasonCode, ...] = ()
    reliability_index: tuple[ReasonCode, ...] = ()
    maintenance_discipline: tuple[ReasonCode, ...] = ()
    structural_risk: tuple[ReasonCode, ...] = ()
    mechanical_risk: tuple[ReasonCode, ...] = ()
    insurance_risk: tuple[ReasonCode, ...] = ()

    def codes(self) -> set[str]:
        return {reason.code for target in REASON_TARGETS for reason in getattr(self, target)}


class Explain(FrozenModel):
    reasons: ReasonCodes = Field(default_factory=ReasonCodes)


class ConfidenceAssessment(FrozenModel):
    coverage_score: Score = Field(default=0, ge=0, le=100)
    consistency_score: Score = Field(default=0, ge=0, le=100)
    overall_confidence: Score = Field(default=0, ge=0, le=100)
    explanation: str = ""


# ── Aggregate Root ──────────────────────────────────────────────────

class VehicleAggregate(FrozenModel):
    vehicle_id: str
    vin: str = ""
    plate: str = ""
    timestamp: datetime
    data_sources: DataSources = Field(default_factory=DataSources)
    derived: DerivedMetrics = Field(default_factory=DerivedMetrics)
    indexes: IntelligenceIndexes
    confidence: ConfidenceAssessment = Field(default_factory=ConfidenceAssessment)
    insight_summary: str
    explain: Explain = Field(default_factory=Explain)
    status: BuildStatus = "success"
    error: str | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
