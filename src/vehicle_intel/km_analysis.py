from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.stats import variation

from vehicle_intel.data_models import KmIntelligence, KmRecord, UsageClass, clamp_score, days_between


ROLLBACK_TOLERANCE_KM = 500
MIN_VOLATILITY_POINTS = 3
LOW_USAGE_DAILY_KM = 20
HIGH_USAGE_DAILY_KM = 70


@dataclass(frozen=True)
class RollbackAnalysis:
    has_rollback: bool
    severity: int
    evidence_count: int


def chronological(km_history: Sequence[KmRecord]) -> list[KmRecord]:
    return sorted(km_history, key=lambda r: r.date)


def _km_diffs(km_history: Sequence[KmRecord]) -> np.ndarray:
    kms = np.array([r.km for r in chronological(km_history)], dtype=float)
    return np.diff(kms)


def detect_odometer_anomaly(km_history: Sequence[KmRecord]) -> bool:
    if len(km_history) < 2:
        return False
    return bool((_km_diffs(km_history) < -ROLLBACK_TOLERANCE_KM).any())


def detect_rollback_severity(km_history: Sequence[KmRecord]) -> RollbackAnalysis:
    """Total rolled-back distance relative to the observed km range."""
    if len(km_history) < 2:
        return RollbackAnalysis(has_rollback=False, severity=0, evidence_count=0)
    diffs = _km_diffs(km_history)
    drops = diffs[diffs < -ROLLBACK_TOLERANCE_KM]
    if drops.size == 0:
        return RollbackAnalysis(has_rollback=False, severity=0, evidence_count=0)

    total_rollback = float(np.abs(drops).sum())
    kms = [r.km for r in km_history]
    span = max(kms) - min(kms)
    severity = clamp_score(100 * total_rollback / span) if span > 0 else 100
    return RollbackAnalysis(has_rollback=True, severity=severity, evidence_count=int(drops.size))


def calculate_km_volatility(km_history: Sequence[KmRecord]) -> int:
    if len(km_history) < MIN_VOLATILITY_POINTS:
        return 0
    ordered = chronological(km_history)
    rates: list[float] = []
    for prev, curr in zip(ordered, ordered[1:]):
        days = days_between(prev.date, curr.date)
        increase = curr.km - prev.km
        if days > 0 and increase >= 0:
            rates.append(increase / days)
    if len(rates) < 2 or np.mean(rates) <= 0:
        return 0
    return clamp_score(float(variation(rates)) * 100)


def calculate_avg_daily_km(km_history: Sequence[KmRecord]) -> float:
    if len(km_history) < 2:
        return 0.0
    ordered = chronological(km_history)
    days = days_between(ordered[0].date, ordered[-1].date)
    if days <= 0:
        return 0.0
    return max(0.0, (ordered[-1].km - ordered[0].km) / days)


def classify_usage(avg_daily_km: float) -> UsageClass:
    if avg_daily_km < LOW_USAGE_DAILY_KM:
        return "low"
    if avg_daily_km > HIGH_USAGE_DAILY_KM:
        return "high"
    return "normal"


def analyze_km_intelligence(km_history: Sequence[KmRecord]) -> KmIntelligence:
    rollback = detect_rollback_severity(km_history)
    avg_daily_km = calculate_avg_daily_km(km_history)
    return KmIntelligence(
        has_rollback=rollback.has_rollback,
        rollback_severity=rollback.severity,
        rollback_evidence_count=rollback.evidence_count,
        volatility_score=calculate_km_volatility(km_history),
        usage_class=classify_usage(avg_daily_km),
        avg_daily_km=round(avg_daily_km, 2),
    )
