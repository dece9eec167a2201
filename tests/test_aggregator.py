import asyncio
from datetime import datetime, timezone

import pytest

from service.providers import InMemoryVehicleDataProvider
from vehicle_intel.aggregator import BuildFailure, BuildSuccess, VehicleAggregator, reference_day


NOW = datetime(2025, 6, 15, 12, 30, tzinfo=timezone.utc)

SCENARIO_BUNDLE = {
    "kmHistory": [
        {"date": "2025-04-01", "km": 100_000},
        {"date": "2025-05-01", "km": 120_000},
        {"date": "2025-06-01", "km": 99_000},
    ],
    "insuranceRecords": [{"date": "2025-05-10", "type": "claim"}],
}

HEALTHY_BUNDLE = {
    "kmHistory": [
        {"date": "2024-06-01", "km": 40_000},
        {"date": "2024-12-01", "km": 48_000},
        {"date": "2025-06-01", "km": 56_000},
    ],
    "serviceRecords": [
        {"date": "2024-06-05", "type": "routine", "description": "Oil change"},
        {"date": "2024-12-03", "type": "routine", "description": "Oil change"},
        {"date": "2025-06-02", "type": "maintenance", "items": ["Brake pads"]},
    ],
    "insuranceRecords": [{"date": "2025-01-01", "type": "renewal"}],
}


class _FailingProvider:
    async def fetch_all(self, vehicle_id, vin, plate):
        raise ConnectionError("upstream down")


class _SlowProvider:
    async def fetch_all(self, vehicle_id, vin, plate):
        await asyncio.sleep(1)
        return {}


def _aggregator(provider, now=NOW, **kwargs):
    return VehicleAggregator(provider, clock=lambda: now, **kwargs)


# ── Reference Day ───────────────────────────────────────────────────


def test_reference_day_truncates_to_utc_midnight():
    assert reference_day(NOW) == datetime(2025, 6, 15, tzinfo=timezone.utc)
    assert reference_day(datetime(2025, 6, 15, 23, 59)) == datetime(2025, 6, 15, tzinfo=timezone.utc)


# ── Successful Builds ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rollback_with_unmatched_claim_is_cross_domain_suspicion():
    provider = InMemoryVehicleDataProvider({"veh-1": SCENARIO_BUNDLE})
    aggregate = await _aggregator(provider).build("veh-1", "VIN1", "34ABC123")

    assert aggregate.status == "success"
    km = aggregate.derived.km_intelligence
    assert km.has_rollback is True
    assert km.rollback_severity == 100
    assert aggregate.derived.odometer_anomaly is True
    assert aggregate.derived.insurance_damage_correlation.mismatch_type == "claims_without_damage"

    cross = [r for r in aggregate.explain.reasons.trust_index if r.code == "CROSS_DOMAIN_SUSPICION"]
    assert len(cross) == 1
    assert cross[0].severity == "high"
    assert cross[0].meta["rollbackSeverity"] == 100


@pytest.mark.asyncio
async def test_empty_data_builds_a_success_aggregate():
    aggregate = await _aggregator(InMemoryVehicleDataProvider()).build("veh-empty")

    assert aggregate.status == "success"
    assert aggregate.error is None
    assert aggregate.derived.service_gap_score == 100
    assert aggregate.derived.insurance_risk == 20
    assert aggregate.indexes.trust_index == 80
    assert aggregate.indexes.reliability_index == 70
    assert aggregate.indexes.maintenance_discipline == 10
    assert aggregate.confidence.coverage_score == 0
    assert "Limited data" in aggregate.insight_summary


@pytest.mark.asyncio
async def test_healthy_vehicle_scores():
    provider = InMemoryVehicleDataProvider({"veh-ok": HEALTHY_BUNDLE})
    aggregate = await _aggregator(provider).build("veh-ok")

    assert aggregate.derived.odometer_anomaly is False
    assert aggregate.derived.service_discipline.service_count == 3
    assert aggregate.derived.service_discipline.days_since_last_service == 13
    assert aggregate.data_sources.service_records[0].description == "Brake pads"
    # longest interval is 181 days, within rounding of the 180 day limit
    assert aggregate.derived.service_gap_score == 0
    assert aggregate.indexes.trust_index == 100
    assert aggregate.indexes.maintenance_discipline == 100
    assert "KM_ANOMALY" not in aggregate.explain.reasons.codes()


@pytest.mark.asyncio
async def test_rebuild_is_idempotent_within_a_day():
    provider = InMemoryVehicleDataProvider({"veh-1": SCENARIO_BUNDLE, "veh-ok": HEALTHY_BUNDLE})
    morning = _aggregator(provider, now=datetime(2025, 6, 15, 8, tzinfo=timezone.utc))
    evening = _aggregator(provider, now=datetime(2025, 6, 15, 20, tzinfo=timezone.utc))

    for vehicle_id in ("veh-1", "veh-ok"):
        first = await morning.build(vehicle_id)
        second = await evening.build(vehicle_id)
        assert first.derived.model_dump_json() == second.derived.model_dump_json()
        assert first.indexes.model_dump_json() == second.indexes.model_dump_json()
        assert first.explain == second.explain
        assert first.timestamp != second.timestamp


@pytest.mark.asyncio
async def test_relative_dates_do_not_leak_wall_clock():
    bundle = {"kmHistory": [{"date": "now", "km": 5_000}, {"date": "2025-05-01", "km": 4_000}]}
    aggregator = _aggregator(InMemoryVehicleDataProvider({"veh-1": bundle}))

    first = await aggregator.build("veh-1")
    second = await aggregator.build("veh-1")
    assert [r.km for r in first.data_sources.km_history] == [4_000]
    assert first.data_sources == second.data_sources


@pytest.mark.asyncio
async def test_malformed_source_does_not_force_fallback():
    bundle = {"kmHistory": 12, "serviceRecords": HEALTHY_BUNDLE["serviceRecords"]}
    aggregate = await _aggregator(InMemoryVehicleDataProvider({"veh-1": bundle})).build("veh-1")

    assert aggregate.status == "success"
    assert aggregate.data_sources.counts()["km"] == 0
    assert aggregate.data_sources.counts()["service"] == 3


# ── Fallback ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_provider_error_yields_fallback():
    aggregator = _aggregator(_FailingProvider())

    result = await aggregator.try_build("veh-x")
    assert isinstance(result, BuildFailure)
    assert "upstream down" in result.reason

    aggregate = await aggregator.build("veh-x", "VIN", "PLATE")
    assert aggregate.status == "fallback"
    assert "upstream down" in aggregate.error
    assert aggregate.indexes.trust_index == 50
    assert aggregate.indexes.reliability_index == 50
    assert aggregate.indexes.maintenance_discipline == 50
    assert aggregate.derived.km_intelligence.usage_class == "normal"
    assert aggregate.confidence.overall_confidence == 0
    assert aggregate.insight_summary.startswith("Vehicle data could not be collected")
    assert aggregate.data_sources.populated_source_count() == 0


@pytest.mark.asyncio
async def test_provider_timeout_yields_fallback():
    aggregate = await _aggregator(_SlowProvider(), fetch_timeout_seconds=0.01).build("veh-slow")
    assert aggregate.status == "fallback"
    assert "timed out" in aggregate.error


@pytest.mark.asyncio
async def test_try_build_success_wraps_aggregate():
    result = await _aggregator(InMemoryVehicleDataProvider()).try_build("veh-empty")
    assert isinstance(result, BuildSuccess)
    assert result.aggregate.vehicle_id == "veh-empty"


@pytest.mark.asyncio
async def test_aggregate_json_uses_camel_case():
    provider = InMemoryVehicleDataProvider({"veh-1": SCENARIO_BUNDLE})
    body = (await _aggregator(provider).build("veh-1")).to_json_dict()
    assert body["vehicleId"] == "veh-1"
    assert body["derived"]["kmIntelligence"]["rollbackSeverity"] == 100
    assert body["derived"]["insuranceDamageCorrelation"]["mismatchType"] == "claims_without_damage"
    assert set(body["explain"]["reasons"]) == {
        "trustIndex", "reliabilityIndex", "maintenanceDiscipline",
        "structuralRisk", "mechanicalRisk", "insuranceRisk",
    }
