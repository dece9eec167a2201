import json
import logging

from service.logging_config import (
    JSONFormatter,
    VehicleContextFilter,
    configure_logging,
    correlation_id,
    get_correlation_id,
    vehicle_log_context,
)
from service.settings import ServiceSettings


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("vehicle_intel.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ── Logging Tests ───────────────────────────────────────────────────


def test_json_formatter_includes_vehicle_context():
    token = correlation_id.set("cid-1")
    try:
        with vehicle_log_context("veh-42"):
            entry = json.loads(JSONFormatter().format(_record("built", extra_data={"km": 3})))
    finally:
        correlation_id.reset(token)

    assert entry["message"] == "built"
    assert entry["level"] == "INFO"
    assert entry["correlation_id"] == "cid-1"
    assert entry["vehicle_id"] == "veh-42"
    assert entry["data"] == {"km": 3}


def test_vehicle_context_is_reset():
    with vehicle_log_context("veh-1"):
        pass
    entry = json.loads(JSONFormatter().format(_record("outside")))
    assert "vehicle_id" not in entry


def test_filter_stamps_context_for_text_format():
    record = _record("text")
    with vehicle_log_context("veh-7"):
        assert VehicleContextFilter().filter(record) is True
    assert record.vehicle_id == "veh-7"
    line = logging.Formatter("[%(vehicle_id)s] %(message)s").format(record)
    assert line == "[veh-7] text"


def test_configure_logging_quiets_client_libraries():
    configure_logging(level="DEBUG", fmt="text")
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("aiokafka").level == logging.WARNING
    configure_logging(level="INFO")


def test_correlation_id_generated_once():
    token = correlation_id.set("")
    try:
        cid = get_correlation_id()
        assert len(cid) == 12
        assert get_correlation_id() == cid
    finally:
        correlation_id.reset(token)


# ── Settings Tests ──────────────────────────────────────────────────


def test_settings_defaults(monkeypatch):
    for name in ("VEHICLE_DATA_SOURCE", "AGGREGATE_CACHE_TTL_SECONDS", "PROVIDER_TIMEOUT_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    settings = ServiceSettings()
    assert settings.vehicle_data_source == "mock"
    assert settings.aggregate_cache_ttl_seconds == 86_400
    assert settings.provider_timeout_seconds == 5.0


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("VEHICLE_DATA_SOURCE", "file")
    monkeypatch.setenv("AGGREGATE_CACHE_TTL_SECONDS", "600")
    monkeypatch.setenv("AUDIT_ACTOR_ID", "nightly-job")
    settings = ServiceSettings()
    assert settings.vehicle_data_source == "file"
    assert settings.aggregate_cache_ttl_seconds == 600
    assert settings.audit_actor_id == "nightly-job"
