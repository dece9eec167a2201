from __future__ import annotations

from vehicle_intel.data_models import DerivedMetrics, IntelligenceIndexes, clamp_score


NEUTRAL_INDEX_VALUE = 50
MIN_SERVICES_FOR_HISTORY = 3


def calculate_trust_index(derived: DerivedMetrics) -> int:
    corr = derived.insurance_damage_correlation
    score = 100.0
    if derived.odometer_anomaly:
        score -= 50
    score -= 0.2 * derived.service_gap_score
    score -= min(30, 10 * corr.damage_count)
    score -= min(40, 15 * corr.claim_count)
    if corr.mismatch_type != "none":
        score -= min(20.0, 0.2 * corr.correlation_score)
    return clamp_score(score)


def calculate_reliability_index(derived: DerivedMetrics) -> int:
    recent = derived.service_discipline.recent_service_count
    score = 100.0
    score -= 0.5 * derived.mechanical_risk
    score -= 0.3 * derived.service_gap_score
    score -= min(20, 5 * derived.obd_intelligence.total_fault_count)
    score += min(20, 3 * recent)
    return clamp_score(score)


def calculate_maintenance_discipline(derived: DerivedMetrics) -> int:
    sd = derived.service_discipline
    score = 100.0
    if sd.service_count < MIN_SERVICES_FOR_HISTORY:
        score -= 40
    elif sd.recent_service_count == 0:
        score -= 30
    score += min(20, 3 * sd.recent_service_count)
    score -= 0.5 * derived.service_gap_score
    if derived.odometer_anomaly:
        score -= 20
    return clamp_score(score)


def compute_indexes(derived: DerivedMetrics) -> IntelligenceIndexes:
    return IntelligenceIndexes(
        trust_index=calculate_trust_index(derived),
        reliability_index=calculate_reliability_index(derived),
        maintenance_discipline=calculate_maintenance_discipline(derived),
    )


def neutral_indexes() -> IntelligenceIndexes:
    return IntelligenceIndexes(
        trust_index=NEUTRAL_INDEX_VALUE,
        reliability_index=NEUTRAL_INDEX_VALUE,
        maintenance_discipline=NEUTRAL_INDEX_VALUE,
    )
