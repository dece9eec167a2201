from __future__ import annotations

from datetime import datetime, timedelta
from itertools import pairwise
from typing import Sequence

import numpy as np

from vehicle_intel.data_models import KmRecord, ServiceDiscipline, ServiceRecord, clamp_score, days_between
from vehicle_intel.km_analysis import chronological


MAX_TIME_GAP_DAYS = 180
TIME_GAP_PENALTY_PER_10_DAYS = 5
MAX_KM_GAP = 15_000
KM_GAP_PENALTY_PER_1000_KM = 2
RECENT_SERVICE_WINDOW_DAYS = 730


def km_at_or_before(km_history: Sequence[KmRecord], when: datetime) -> KmRecord | None:
    """Latest odometer reading taken no later than ``when``."""
    candidates = [r for r in km_history if r.date <= when]
    return max(candidates, key=lambda r: r.date) if candidates else None


def count_recent_services(service_records: Sequence[ServiceRecord], as_of: datetime) -> int:
    cutoff = as_of - timedelta(days=RECENT_SERVICE_WINDOW_DAYS)
    return sum(1 for r in service_records if r.date >= cutoff)


def _time_gap_score(gaps: Sequence[float]) -> int:
    worst = max(gaps)
    if worst <= MAX_TIME_GAP_DAYS:
        return 100
    return clamp_score(100 - round((worst - MAX_TIME_GAP_DAYS) / 10 * TIME_GAP_PENALTY_PER_10_DAYS))


def _km_gap_score(gaps: Sequence[int]) -> int:
    worst = max(gaps, default=0)
    if worst <= MAX_KM_GAP:
        return 100
    return clamp_score(100 - round((worst - MAX_KM_GAP) / 1000 * KM_GAP_PENALTY_PER_1000_KM))


def _regularity_score(gaps: Sequence[float]) -> int:
    if len(gaps) < 2:
        return 100
    mean = float(np.mean(gaps))
    if mean <= 0:
        return 100
    cv = float(np.std(gaps)) / mean
    if cv > 0.5:
        return clamp_score(max(20.0, 100 - cv * 100))
    return clamp_score(min(100.0, 100 - cv * 50))


def analyze_service_discipline(
    service_records: Sequence[ServiceRecord],
    km_history: Sequence[KmRecord],
    as_of: datetime,
) -> ServiceDiscipline:
    if not service_records:
        return ServiceDiscipline()

    services = sorted(service_records, key=lambda r: r.date)
    readings = chronological(km_history)
    last_service = services[-1].date
    days_since = round(days_between(last_service, as_of))

    estimated_km: int | None = None
    if readings:
        at_service = km_at_or_before(readings, last_service)
        if at_service is not None:
            estimated_km = readings[-1].km - at_service.km

    time_gaps = [days_between(prev.date, curr.date) for prev, curr in pairwise(services)]
    time_gaps.append(float(days_since))

    km_gap_score = 100
    if len(readings) > 1:
        km_gaps: list[int] = []
        for prev, curr in pairwise(services):
            prev_km = km_at_or_before(readings, prev.date)
            curr_km = km_at_or_before(readings, curr.date)
            if prev_km is not None and curr_km is not None:
                km_gaps.append(curr_km.km - prev_km.km)
        if estimated_km is not None:
            km_gaps.append(estimated_km)
        km_gap_score = _km_gap_score(km_gaps)

    time_gap_score = _time_gap_score(time_gaps)
    regularity = _regularity_score(time_gaps)
    discipline = clamp_score(0.5 * regularity + 0.3 * time_gap_score + 0.2 * km_gap_score)

    return ServiceDiscipline(
        time_gap_score=time_gap_score,
        km_gap_score=km_gap_score,
        regularity_score=regularity,
        discipline_score=discipline,
        last_service_date=last_service,
        days_since_last_service=days_since,
        estimated_km_since_last_service=estimated_km,
        service_count=len(services),
        recent_service_count=count_recent_services(services, as_of),
    )


def service_gap_score(discipline: ServiceDiscipline) -> int:
    """Risk-oriented inversion of the time-gap score; 100 when nothing is on record."""
    return clamp_score(100 - discipline.time_gap_score)
