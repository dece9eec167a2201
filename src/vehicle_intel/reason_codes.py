"""Explainability rules.

Every rule reads values that are already present in DerivedMetrics or in the
record counts of the same aggregate, so the explanation can never drift from
the numbers it explains.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any

from vehicle_intel.data_models import DataSources, DerivedMetrics, ReasonCode, ReasonCodes, ReasonSeverity


class _ReasonCollector:
    def __init__(self) -> None:
        self._by_target: dict[str, list[ReasonCode]] = defaultdict(list)

    def add(self, target: str, code: str, severity: ReasonSeverity, message: str, **meta: Any) -> None:
        self._by_target[target].append(ReasonCode(code=code, severity=severity, message=message, meta=meta))

    def build(self) -> ReasonCodes:
        return ReasonCodes(**{target: tuple(reasons) for target, reasons in self._by_target.items()})


def _trust_reasons(out: _ReasonCollector, derived: DerivedMetrics, counts: dict[str, int]) -> None:
    km = derived.km_intelligence
    if derived.odometer_anomaly or km.rollback_severity > 40:
        out.add(
            "trust_index", "KM_ANOMALY", "high",
            "Odometer history shows decreasing readings (possible rollback or device fault)",
            odometerAnomaly=derived.odometer_anomaly,
            rollbackSeverity=km.rollback_severity,
            rollbackEvidenceCount=km.rollback_evidence_count,
        )
    if counts["km"] == 0:
        out.add("trust_index", "MISSING_KM_DATA", "warn", "No odometer history available", kmCount=0)
    if km.volatility_score > 70:
        out.add(
            "trust_index", "HIGH_KM_VOLATILITY", "warn",
            "Daily mileage varies strongly between readings",
            volatilityScore=km.volatility_score,
        )


def _reliability_reasons(out: _ReasonCollector, derived: DerivedMetrics, counts: dict[str, int]) -> None:
    if derived.mechanical_risk > 50 or counts["obd"] > 0:
        out.add(
            "reliability_index", "OBD_FAULTS", "warn",
            "Diagnostic fault codes are on record",
            mechanicalRisk=derived.mechanical_risk,
            obdCount=counts["obd"],
        )
    if counts["service"] == 0:
        out.add("reliability_index", "NO_SERVICE_HISTORY", "warn", "No service history available", serviceCount=0)
    if derived.service_gap_score > 60:
        out.add(
            "reliability_index", "SERVICE_GAP", "warn",
            "Long intervals between services",
            serviceGapScore=derived.service_gap_score,
        )


def _maintenance_reasons(out: _ReasonCollector, derived: DerivedMetrics, counts: dict[str, int]) -> None:
    sd = derived.service_discipline
    if counts["service"] > 0:
        if sd.days_since_last_service is not None and sd.days_since_last_service > 365:
            out.add(
                "maintenance_discipline", "SERVICE_OVERDUE", "high",
                f"Last service was {sd.days_since_last_service} days ago",
                daysSinceLastService=sd.days_since_last_service,
            )
        if sd.regularity_score < 40:
            out.add(
                "maintenance_discipline", "IRREGULAR_SERVICE_PATTERN", "warn",
                "Service intervals are irregular",
                regularityScore=sd.regularity_score,
            )
        if sd.estimated_km_since_last_service is not None and sd.estimated_km_since_last_service > 20_000:
            out.add(
                "maintenance_discipline", "HIGH_KM_SINCE_SERVICE", "warn",
                f"About {sd.estimated_km_since_last_service} km driven since the last service",
                estimatedKmSinceLastService=sd.estimated_km_since_last_service,
            )
        if sd.discipline_score < 40:
            out.add(
                "maintenance_discipline", "LOW_DISCIPLINE_SCORE", "high",
                "Overall service discipline is poor",
                disciplineScore=sd.discipline_score,
            )
    if counts["service"] < 2:
        out.add(
            "maintenance_discipline", "INSUFFICIENT_SERVICE_HISTORY", "warn",
            "Too few service records to judge maintenance habits",
            serviceCount=counts["service"],
        )
    if derived.odometer_anomaly:
        out.add(
            "maintenance_discipline", "ODOMETER_ANOMALY", "warn",
            "Odometer anomaly makes mileage-based service intervals unreliable",
            odometerAnomaly=True,
        )


def _structural_reasons(out: _ReasonCollector, derived: DerivedMetrics, counts: dict[str, int]) -> None:
    if derived.structural_risk > 70:
        out.add(
            "structural_risk", "HIGH_DAMAGE_RISK", "high",
            "Damage history carries significant structural risk",
            structuralRisk=derived.structural_risk,
        )
    if counts["damage"] > 5:
        out.add(
            "structural_risk", "MULTIPLE_DAMAGE_RECORDS", "warn",
            f"{counts['damage']} damage records on file",
            damageCount=counts["damage"],
        )
    if counts["damage"] == 0:
        out.add("structural_risk", "NO_DAMAGE_DATA", "info", "No damage records available", damageCount=0)


def _mechanical_reasons(out: _ReasonCollector, derived: DerivedMetrics, counts: dict[str, int]) -> None:
    obd = derived.obd_intelligence
    if derived.mechanical_risk > 50:
        out.add(
            "mechanical_risk", "HIGH_MECHANICAL_RISK", "high",
            "Fault code pattern indicates elevated mechanical risk",
            mechanicalRisk=derived.mechanical_risk,
        )
    if counts["obd"] > 3:
        out.add(
            "mechanical_risk", "MULTIPLE_OBD_FAULTS", "warn",
            f"{counts['obd']} fault codes recorded",
            obdCount=counts["obd"],
        )
    if counts["obd"] == 0:
        return
    if obd.highest_severity == "high":
        out.add(
            "mechanical_risk", "HIGH_OBD_SEVERITY", "high",
            "Repeated faults in engine or transmission systems",
            highestSeverity=obd.highest_severity,
            severityScore=obd.severity_score,
        )
    if obd.repeated_faults:
        out.add(
            "mechanical_risk", "REPEATED_FAULT_CODES", "warn",
            f"Recurring fault codes: {', '.join(obd.repeated_faults)}",
            repeatedFaults=list(obd.repeated_faults),
        )
    if obd.category_breakdown.get("engine", 0) > 0:
        out.add(
            "mechanical_risk", "ENGINE_FAULT_PRESENT", "warn",
            "Engine fault codes are present",
            engineFaults=obd.category_breakdown["engine"],
        )
    if obd.category_breakdown.get("transmission", 0) > 0:
        out.add(
            "mechanical_risk", "TRANSMISSION_FAULT_PRESENT", "high",
            "Transmission fault codes are present",
            transmissionFaults=obd.category_breakdown["transmission"],
        )


def _insurance_reasons(out: _ReasonCollector, derived: DerivedMetrics, counts: dict[str, int]) -> None:
    if derived.insurance_risk > 50:
        out.add(
            "insurance_risk", "CLAIM_HISTORY", "warn",
            "Recent claims or policy lapses on record",
            insuranceRisk=derived.insurance_risk,
        )
    if counts["insurance"] > 3:
        out.add(
            "insurance_risk", "MULTIPLE_CLAIMS", "warn",
            f"{counts['insurance']} insurance events on record",
            insuranceCount=counts["insurance"],
        )
    if counts["insurance"] == 0:
        out.add("insurance_risk", "NO_INSURANCE_DATA", "info", "No insurance records available", insuranceCount=0)


def _correlation_reasons(out: _ReasonCollector, derived: DerivedMetrics) -> None:
    corr = derived.insurance_damage_correlation
    counts_meta = {"claimCount": corr.claim_count, "damageCount": corr.damage_count}

    if corr.mismatch_type != "none":
        out.add(
            "trust_index", "INSURANCE_DAMAGE_MISMATCH",
            "high" if corr.correlation_score >= 50 else "warn",
            "Insurance and damage records disagree",
            mismatchType=corr.mismatch_type,
            correlationScore=corr.correlation_score,
            **counts_meta,
        )

    if corr.mismatch_type == "claims_without_damage":
        out.add(
            "insurance_risk", "CLAIM_WITHOUT_DAMAGE_RECORD", "warn",
            "Insurance claims have no matching damage record",
            matchedEvents=corr.matched_events,
            **counts_meta,
        )
        out.add(
            "trust_index", "INSURANCE_CLAIM_MISMATCH", "warn",
            "Claims exceed recorded damage, which reduces trust",
            mismatchType=corr.mismatch_type,
            **counts_meta,
        )

    if corr.mismatch_type == "damage_without_claims":
        out.add(
            "structural_risk", "DAMAGE_WITHOUT_CLAIM", "warn",
            "Damage records have no matching insurance claim",
            matchedEvents=corr.matched_events,
            **counts_meta,
        )
        out.add(
            "trust_index", "UNREPORTED_DAMAGE", "warn",
            "Damage appears to be unreported to insurance",
            mismatchType=corr.mismatch_type,
            **counts_meta,
        )

    if corr.correlation_score >= 50:
        out.add(
            "insurance_risk", "INSURANCE_DAMAGE_MISMATCH_HIGH", "high",
            "Large gap between insurance claims and damage records",
            correlationScore=corr.correlation_score,
            mismatchType=corr.mismatch_type,
            **counts_meta,
        )

    if corr.mismatch_type != "none":
        high = corr.mismatch_type == "damage_without_claims" or corr.correlation_score >= 50
        out.add(
            "trust_index", "INSURANCE_DAMAGE_INCONSISTENCY", "high" if high else "warn",
            "Insurance and damage inconsistency lowers the trust index",
            mismatchType=corr.mismatch_type,
            correlationScore=corr.correlation_score,
            **counts_meta,
        )

    if derived.odometer_anomaly and corr.mismatch_type != "none":
        out.add(
            "trust_index", "CROSS_DOMAIN_SUSPICION", "high",
            "Odometer anomaly together with an insurance and damage mismatch",
            odometerAnomaly=True,
            mismatchType=corr.mismatch_type,
            rollbackSeverity=derived.km_intelligence.rollback_severity,
            correlationScore=corr.correlation_score,
        )


def build_reason_codes(derived: DerivedMetrics, data_sources: DataSources) -> ReasonCodes:
    counts = data_sources.counts()
    out = _ReasonCollector()
    _trust_reasons(out, derived, counts)
    _reliability_reasons(out, derived, counts)
    _maintenance_reasons(out, derived, counts)
    _structural_reasons(out, derived, counts)
    _mechanical_reasons(out, derived, counts)
    _insurance_reasons(out, derived, counts)
    _correlation_reasons(out, derived)
    return out.build()
