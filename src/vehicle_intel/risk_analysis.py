from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Sequence

from vehicle_intel.data_models import (
    OBD_CATEGORIES,
    DamageRecord,
    InsuranceDamageCorrelation,
    InsuranceRecord,
    ObdCategory,
    ObdIntelligence,
    ObdRecord,
    ObdSeverity,
    clamp_score,
    days_between,
)


MAJOR_DAMAGE_WEIGHT = 50
MAJOR_DAMAGE_DECAY_DAYS = 730
MINOR_DAMAGE_WEIGHT = 10
MINOR_DAMAGE_DECAY_DAYS = 365

INSURANCE_LOOKBACK_DAYS = 365
INSURANCE_BASELINE_RISK = 20
CLAIM_PENALTY = 30
LAPSE_PENALTY = 40
INQUIRY_PENALTY = 15
INQUIRY_TOLERANCE = 2

_OBD_PREFIXES: tuple[tuple[str, ObdCategory], ...] = (
    ("P0", "engine"),
    ("P1", "transmission"),
    ("P2", "emission"),
    ("P3", "emission"),
    ("C", "brake"),
    ("U", "electrical"),
)


# ── Structural ──────────────────────────────────────────────────────

def _decay(age_days: float, horizon_days: int) -> float:
    return min(1.0, max(0.0, 1 - age_days / horizon_days))


def calculate_structural_risk(damage_records: Sequence[DamageRecord], as_of: datetime) -> int:
    risk = 0.0
    for record in damage_records:
        age = days_between(record.date, as_of)
        if record.severity == "major":
            risk += MAJOR_DAMAGE_WEIGHT * _decay(age, MAJOR_DAMAGE_DECAY_DAYS)
        else:
            risk += MINOR_DAMAGE_WEIGHT * _decay(age, MINOR_DAMAGE_DECAY_DAYS)
    return clamp_score(risk)


# ── Insurance ───────────────────────────────────────────────────────

def recent_insurance_records(
    insurance_records: Sequence[InsuranceRecord], as_of: datetime
) -> list[InsuranceRecord]:
    cutoff = as_of - timedelta(days=INSURANCE_LOOKBACK_DAYS)
    return [r for r in insurance_records if r.date >= cutoff]


def calculate_insurance_risk(insurance_records: Sequence[InsuranceRecord], as_of: datetime) -> int:
    if not insurance_records:
        return INSURANCE_BASELINE_RISK
    counts = Counter(r.type for r in recent_insurance_records(insurance_records, as_of))
    risk = CLAIM_PENALTY * counts["claim"] + LAPSE_PENALTY * counts["lapse"]
    if counts["inquiry"] > INQUIRY_TOLERANCE:
        risk += INQUIRY_PENALTY
    return clamp_score(risk)


# ── OBD / Mechanical ────────────────────────────────────────────────

def categorize_fault_code(code: str) -> ObdCategory:
    upper = code.strip().upper()
    for prefix, category in _OBD_PREFIXES:
        if upper.startswith(prefix):
            return category
    return "other"


def _highest_severity(repeated: Sequence[str], breakdown: dict[str, int]) -> ObdSeverity:
    if any(categorize_fault_code(code) in ("engine", "transmission") for code in repeated):
        return "high"
    if sum(1 for n in breakdown.values() if n > 0) > 1:
        return "medium"
    return "low"


def analyze_obd_intelligence(obd_records: Sequence[ObdRecord]) -> ObdIntelligence:
    if not obd_records:
        return ObdIntelligence()

    occurrences = Counter(r.fault_code for r in obd_records)
    breakdown = {category: 0 for category in OBD_CATEGORIES}
    for code, count in occurrences.items():
        breakdown[categorize_fault_code(code)] += count

    repeated = tuple(code for code, count in occurrences.items() if count > 1)
    severity = _highest_severity(repeated, breakdown)
    active_categories = sum(1 for n in breakdown.values() if n > 0)

    score = min(50, 10 * len(obd_records))
    if repeated:
        score += 20
    score += {"high": 30, "medium": 15, "low": 0}[severity]
    score += 5 * (active_categories - 1)

    return ObdIntelligence(
        total_fault_count=len(obd_records),
        unique_fault_codes=len(occurrences),
        category_breakdown=breakdown,
        highest_severity=severity,
        repeated_faults=repeated,
        severity_score=clamp_score(score),
    )


def calculate_mechanical_risk(obd: ObdIntelligence) -> int:
    return obd.severity_score


# ── Cross-domain ────────────────────────────────────────────────────

def analyze_insurance_damage_correlation(
    insurance_records: Sequence[InsuranceRecord],
    damage_records: Sequence[DamageRecord],
) -> InsuranceDamageCorrelation:
    claims = sum(1 for r in insurance_records if r.type == "claim")
    damages = len(damage_records)
    if claims > damages:
        mismatch = "claims_without_damage"
    elif damages > claims:
        mismatch = "damage_without_claims"
    else:
        mismatch = "none"

    score = 10 * abs(claims - damages)
    if mismatch != "none":
        score += 20
    return InsuranceDamageCorrelation(
        claim_count=claims,
        damage_count=damages,
        matched_events=min(claims, damages),
        mismatch_type=mismatch,
        correlation_score=clamp_score(score),
    )
