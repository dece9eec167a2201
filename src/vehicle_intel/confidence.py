"""Confidence scoring for derived metrics, indexes and signals.

Coverage rewards data volume per source, consistency penalizes contradictory
risk signals, and the overall confidence blends the two 60/40.
"""
from __future__ import annotations

from vehicle_intel.data_models import ConfidenceAssessment, DataSources, DerivedMetrics, clamp_score


# source -> (max points, base points); each record adds one point up to the max
COVERAGE_WEIGHTS: dict[str, tuple[int, int]] = {
    "km": (25, 5),
    "service": (25, 5),
    "obd": (15, 3),
    "insurance": (20, 4),
    "damage": (15, 3),
}

COVERAGE_LABELS: dict[str, str] = {
    "km": "KM",
    "service": "Service",
    "obd": "OBD",
    "insurance": "Insurance",
    "damage": "Damage",
}

# index key -> (supporting source, penalty when that source is empty)
INDEX_CONFIDENCE_RULES: dict[str, tuple[str, int]] = {
    "trustIndex": ("km", 20),
    "maintenanceDiscipline": ("service", 20),
    "structuralRisk": ("damage", 20),
    "mechanicalRisk": ("obd", 25),
    "insuranceRisk": ("insurance", 25),
}

CONFIDENCE_FLOOR = 30
ROLLBACK_CONFIDENCE_THRESHOLD = 60
ROLLBACK_CONFIDENCE_PENALTY = 20
HIGH_SEVERITY_MIN_EVIDENCE = 3
THIN_EVIDENCE_CAP = 80
NO_EVIDENCE_CAP = 30


def _consistency_issues(derived: DerivedMetrics) -> list[tuple[str, int]]:
    issues: list[tuple[str, int]] = []
    if derived.odometer_anomaly:
        issues.append(("KM anomaly", 35))
    if derived.service_gap_score > 60:
        issues.append(("service gap", 15))
    if derived.insurance_risk > 60:
        issues.append(("insurance risk", 10))
    if derived.structural_risk > 70:
        issues.append(("structural risk", 15))
    return issues


def compute_coverage_score(data_sources: DataSources) -> int:
    counts = data_sources.counts()
    score = 0
    for source, (cap, base) in COVERAGE_WEIGHTS.items():
        if counts[source] > 0:
            score += min(cap, base + counts[source])
    return clamp_score(score)


def compute_consistency_score(derived: DerivedMetrics) -> int:
    return clamp_score(100 - sum(penalty for _, penalty in _consistency_issues(derived)))


def compute_overall_confidence(coverage: int, consistency: int) -> int:
    return clamp_score(0.6 * coverage + 0.4 * consistency)


def build_confidence_explanation(
    data_sources: DataSources,
    derived: DerivedMetrics,
    coverage: int,
    consistency: int,
    overall: int,
) -> str:
    counts = data_sources.counts()
    present = [f"{COVERAGE_LABELS[s]} ({counts[s]})" for s in COVERAGE_WEIGHTS if counts[s] > 0]
    coverage_part = f"Coverage: {', '.join(present) if present else 'no data'} ({coverage}%)"
    issues = [name for name, _ in _consistency_issues(derived)]
    issues_part = f"Issues: {', '.join(issues) if issues else 'none'} (Score: {consistency}%)"
    return f"{coverage_part} | {issues_part} | Overall: {overall}%"


def assess_confidence(data_sources: DataSources, derived: DerivedMetrics) -> ConfidenceAssessment:
    coverage = compute_coverage_score(data_sources)
    consistency = compute_consistency_score(derived)
    overall = compute_overall_confidence(coverage, consistency)
    return ConfidenceAssessment(
        coverage_score=coverage,
        consistency_score=consistency,
        overall_confidence=overall,
        explanation=build_confidence_explanation(data_sources, derived, coverage, consistency, overall),
    )


def _penalize(base: int, penalty: int) -> int:
    # never raises a confidence that already sits below the floor
    return min(base, max(CONFIDENCE_FLOOR, base - penalty))


def adjust_index_confidence(
    index_key: str,
    base_confidence: int,
    data_sources: DataSources,
    derived: DerivedMetrics,
) -> int:
    confidence = base_confidence
    rule = INDEX_CONFIDENCE_RULES.get(index_key)
    if rule is not None:
        source, penalty = rule
        if data_sources.counts()[source] == 0:
            confidence = _penalize(confidence, penalty)
    if index_key == "trustIndex" and derived.km_intelligence.rollback_severity > ROLLBACK_CONFIDENCE_THRESHOLD:
        confidence = _penalize(confidence, ROLLBACK_CONFIDENCE_PENALTY)
    return clamp_score(confidence)


def adjust_signal_confidence(base_confidence: int, severity: str, evidence_count: int) -> int:
    confidence = base_confidence
    if severity == "high" and evidence_count < HIGH_SEVERITY_MIN_EVIDENCE:
        confidence = min(confidence, THIN_EVIDENCE_CAP)
    if evidence_count == 0:
        confidence = min(confidence, NO_EVIDENCE_CAP)
    return clamp_score(confidence)
