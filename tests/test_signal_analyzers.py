from datetime import datetime, timedelta, timezone

from vehicle_intel.data_models import DamageRecord, InsuranceRecord, KmRecord, ObdRecord, ServiceRecord
from vehicle_intel.km_analysis import (
    analyze_km_intelligence,
    calculate_avg_daily_km,
    calculate_km_volatility,
    classify_usage,
    detect_odometer_anomaly,
    detect_rollback_severity,
)
from vehicle_intel.risk_analysis import (
    analyze_insurance_damage_correlation,
    analyze_obd_intelligence,
    calculate_insurance_risk,
    calculate_structural_risk,
    categorize_fault_code,
)
from vehicle_intel.service_discipline import analyze_service_discipline, service_gap_score


AS_OF = datetime(2025, 6, 15, tzinfo=timezone.utc)


def days_ago(n: float) -> datetime:
    return AS_OF - timedelta(days=n)


def km(*pairs):
    return [KmRecord(date=days_ago(d), km=k) for d, k in pairs]


# ── Odometer ────────────────────────────────────────────────────────


def test_non_decreasing_history_has_no_anomaly():
    history = km((300, 10_000), (200, 10_000), (100, 15_000), (0, 21_000))
    assert detect_odometer_anomaly(history) is False
    assert analyze_km_intelligence(history).has_rollback is False


def test_small_decrease_within_tolerance_is_ignored():
    history = km((20, 10_000), (10, 9_600))
    assert detect_odometer_anomaly(history) is False


def test_anomaly_detected_regardless_of_input_order():
    history = km((0, 90_000), (100, 100_000))
    assert detect_odometer_anomaly(list(reversed(history))) is True


def test_single_rollback_severity_matches_span_ratio():
    # span = max - min = 60_000 - 10_000 = 50_000, delta = 10_000
    history = km((300, 10_000), (200, 60_000), (100, 50_000))
    rollback = detect_rollback_severity(history)
    assert rollback.has_rollback is True
    assert rollback.evidence_count == 1
    assert rollback.severity == round(100 * 10_000 / 50_000)


def test_scenario_rollback_is_full_severity():
    history = km((60, 100_000), (30, 120_000), (0, 99_000))
    intel = analyze_km_intelligence(history)
    assert intel.has_rollback is True
    assert intel.rollback_severity == 100
    assert intel.rollback_evidence_count == 1


def test_volatility_requires_three_points():
    assert calculate_km_volatility(km((10, 0), (0, 1000))) == 0


def test_volatility_zero_for_constant_rate():
    history = km((30, 0), (20, 500), (10, 1000), (0, 1500))
    assert calculate_km_volatility(history) == 0


def test_volatility_for_uneven_rates():
    # daily rates 10 and 30: mean 20, population std 10 -> cv 0.5
    history = km((20, 0), (10, 100), (0, 400))
    assert calculate_km_volatility(history) == 50


def test_avg_daily_km_and_usage_class():
    history = km((100, 10_000), (0, 15_000))
    assert calculate_avg_daily_km(history) == 50
    assert classify_usage(10) == "low"
    assert classify_usage(50) == "normal"
    assert classify_usage(71) == "high"
    assert calculate_avg_daily_km(km((0, 10))) == 0


# ── Service discipline ──────────────────────────────────────────────


def test_no_services_defaults_to_maximum_gap_risk():
    discipline = analyze_service_discipline([], [], AS_OF)
    assert discipline.discipline_score == 0
    assert discipline.last_service_date is None
    assert service_gap_score(discipline) == 100


def test_regular_services_score_well():
    services = [ServiceRecord(date=days_ago(d), type="routine") for d in (300, 200, 100, 0)]
    readings = km((300, 10_000), (200, 15_000), (100, 20_000), (0, 25_000))
    discipline = analyze_service_discipline(services, readings, AS_OF)
    assert discipline.time_gap_score == 100
    assert discipline.km_gap_score == 100
    assert discipline.days_since_last_service == 0
    assert discipline.estimated_km_since_last_service == 0
    assert discipline.service_count == 4
    assert discipline.recent_service_count == 4
    assert service_gap_score(discipline) == 0


def test_long_gap_penalized():
    # gaps: 400 days then 0 days since -> max 400 -> 100 - round(220/10*5) = 0
    services = [ServiceRecord(date=days_ago(d), type="routine") for d in (400, 0)]
    discipline = analyze_service_discipline(services, [], AS_OF)
    assert discipline.time_gap_score == 0
    assert service_gap_score(discipline) == 100


def test_km_gap_penalized_beyond_limit():
    services = [ServiceRecord(date=days_ago(d), type="routine") for d in (100, 50)]
    readings = km((100, 10_000), (50, 35_000), (0, 36_000))
    discipline = analyze_service_discipline(services, readings, AS_OF)
    # worst km gap 25_000 -> 100 - round(10 * 2) = 80
    assert discipline.km_gap_score == 80
    assert discipline.estimated_km_since_last_service == 1_000


def test_recent_service_window_is_two_years():
    services = [ServiceRecord(date=days_ago(d), type="routine") for d in (1000, 800, 700)]
    assert analyze_service_discipline(services, [], AS_OF).recent_service_count == 1


# ── Structural / insurance ──────────────────────────────────────────


def test_structural_risk_decays_with_age():
    fresh = [DamageRecord(date=AS_OF, severity="major", description="x")]
    half = [DamageRecord(date=days_ago(365), severity="major", description="x")]
    old = [DamageRecord(date=days_ago(800), severity="major", description="x")]
    assert calculate_structural_risk(fresh, AS_OF) == 50
    assert calculate_structural_risk(half, AS_OF) == 25
    assert calculate_structural_risk(old, AS_OF) == 0


def test_structural_risk_clamped():
    records = [DamageRecord(date=days_ago(i), severity="major", description=str(i)) for i in range(5)]
    assert calculate_structural_risk(records, AS_OF) == 100


def test_insurance_risk_baseline_and_window():
    assert calculate_insurance_risk([], AS_OF) == 20
    records = [
        InsuranceRecord(date=days_ago(10), type="claim"),
        InsuranceRecord(date=days_ago(20), type="lapse"),
        InsuranceRecord(date=days_ago(500), type="claim"),
    ]
    assert calculate_insurance_risk(records, AS_OF) == 70
    inquiries = [InsuranceRecord(date=days_ago(i), type="inquiry") for i in (1, 2, 3)]
    assert calculate_insurance_risk(inquiries, AS_OF) == 15


# ── OBD ─────────────────────────────────────────────────────────────


def test_fault_code_categories():
    assert categorize_fault_code("P0300") == "engine"
    assert categorize_fault_code("P1234") == "transmission"
    assert categorize_fault_code("P2000") == "emission"
    assert categorize_fault_code("C0035") == "brake"
    assert categorize_fault_code("U0100") == "electrical"
    assert categorize_fault_code("B1000") == "other"


def test_repeated_engine_fault_escalates_to_high():
    records = [ObdRecord(date=days_ago(d), fault_code="P0300") for d in (1, 2)]
    obd = analyze_obd_intelligence(records)
    assert obd.highest_severity == "high"
    assert obd.repeated_faults == ("P0300",)
    assert obd.unique_fault_codes == 1
    assert obd.category_breakdown["engine"] == 2
    # 20 for two faults + 20 repeat + 30 high
    assert obd.severity_score == 70


def test_multiple_categories_medium():
    records = [ObdRecord(date=days_ago(1), fault_code="P0300"), ObdRecord(date=days_ago(2), fault_code="C0035")]
    obd = analyze_obd_intelligence(records)
    assert obd.highest_severity == "medium"
    assert obd.severity_score == 20 + 15 + 5


def test_no_obd_records():
    obd = analyze_obd_intelligence([])
    assert obd.total_fault_count == 0
    assert obd.severity_score == 0
    assert obd.highest_severity == "low"


# ── Correlation ─────────────────────────────────────────────────────


def test_claims_without_damage():
    claims = [InsuranceRecord(date=days_ago(i), type="claim") for i in (1, 2, 3)]
    damage = [DamageRecord(date=days_ago(1), severity="minor", description="x")]
    corr = analyze_insurance_damage_correlation(claims, damage)
    assert corr.mismatch_type == "claims_without_damage"
    assert corr.matched_events == 1
    assert corr.correlation_score == 40


def test_damage_without_claims_and_balanced():
    damage = [DamageRecord(date=days_ago(i), severity="minor", description=str(i)) for i in (1, 2)]
    policy = [InsuranceRecord(date=days_ago(1), type="policy")]
    corr = analyze_insurance_damage_correlation(policy, damage)
    assert corr.mismatch_type == "damage_without_claims"
    assert corr.claim_count == 0
    assert corr.matched_events == 0
    assert corr.correlation_score == 40

    balanced = analyze_insurance_damage_correlation([], [])
    assert balanced.mismatch_type == "none"
    assert balanced.correlation_score == 0
