"""Raw record normalization.

Providers hand over loosely shaped dicts where every logical field may arrive
under several names. Each normalizer walks an ordered candidate list and keeps
the first usable value; records missing a required field are dropped.
"""
from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeVar

import pandas as pd

from vehicle_intel.data_models import (
    DamageRecord,
    DataSources,
    InsuranceRecord,
    KmRecord,
    ObdRecord,
    ServiceRecord,
)


KM_DATE_FIELDS = ("date", "timestamp", "tarih", "createdAt")
KM_VALUE_FIELDS = ("km", "odometerKm", "kilometre", "odometer", "mileage")
OBD_CODE_FIELDS = ("faultCode", "code", "fault_code", "dtc")
OBD_DATE_FIELDS = ("date", "createdAt", "timestamp", "occurredAt")
INSURANCE_DATE_FIELDS = ("date", "occurredAt", "createdAt", "timestamp")
DAMAGE_DATE_FIELDS = ("date", "occurredAt", "createdAt", "timestamp")
DAMAGE_DESCRIPTION_FIELDS = ("type", "damageType", "description")
SERVICE_DATE_FIELDS = ("date", "serviceDate", "createdAt", "timestamp")
SERVICE_TYPE_FIELDS = ("type", "serviceType", "category")

# order matters: "claim renewal" is a claim
_INSURANCE_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("claim", "claim"),
    ("lapse", "lapse"),
    ("cancel", "lapse"),
    ("inquiry", "inquiry"),
    ("quote", "inquiry"),
    ("renewal", "renewal"),
    ("policy", "policy"),
)

_SOURCE_KEYS: dict[str, tuple[str, str]] = {
    "km_history": ("kmHistory", "km_history"),
    "obd_records": ("obdRecords", "obd_records"),
    "insurance_records": ("insuranceRecords", "insurance_records"),
    "damage_records": ("damageRecords", "damage_records"),
    "service_records": ("serviceRecords", "service_records"),
}

_RELATIVE_DATE_WORDS = frozenset({"now", "today", "tomorrow", "yesterday"})

T = TypeVar("T")


def parse_date(value: Any) -> datetime | None:
    if isinstance(value, (datetime, date)):
        ts = pd.Timestamp(value)
        ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        # pandas resolves these against the wall clock
        if text.lower() in _RELATIVE_DATE_WORDS:
            return None
        ts = pd.to_datetime(text, format="ISO8601", utc=True, errors="coerce")
    else:
        return None
    if pd.isna(ts):
        return None
    return ts.to_pydatetime()


def _first(raw: Mapping[str, Any], fields: Sequence[str], convert: Callable[[Any], T | None]) -> T | None:
    for name in fields:
        if name not in raw:
            continue
        converted = convert(raw[name])
        if converted is not None:
            return converted
    return None


def _non_empty_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _odometer_value(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(round(value))


# ── Single Record Normalizers ───────────────────────────────────────

def normalize_km_record(raw: Any) -> KmRecord | None:
    if not isinstance(raw, Mapping):
        return None
    when = _first(raw, KM_DATE_FIELDS, parse_date)
    km = _first(raw, KM_VALUE_FIELDS, _odometer_value)
    if when is None or km is None:
        return None
    return KmRecord(date=when, km=km)


def normalize_obd_record(raw: Any) -> ObdRecord | None:
    if not isinstance(raw, Mapping):
        return None
    code = _first(raw, OBD_CODE_FIELDS, _non_empty_str)
    when = _first(raw, OBD_DATE_FIELDS, parse_date)
    if code is None or when is None:
        return None
    return ObdRecord(date=when, fault_code=code.upper())


def _insurance_type(value: Any) -> str | None:
    text = _non_empty_str(value)
    if text is None:
        return None
    lowered = text.lower()
    for keyword, mapped in _INSURANCE_KEYWORDS:
        if keyword in lowered:
            return mapped
    return None


def normalize_insurance_record(raw: Any) -> InsuranceRecord | None:
    if not isinstance(raw, Mapping):
        return None
    when = _first(raw, INSURANCE_DATE_FIELDS, parse_date)
    if when is None:
        return None
    if "type" in raw:
        kind = _insurance_type(raw["type"])
    elif _non_empty_str(raw.get("claimType")):
        kind = "claim"
    elif _non_empty_str(raw.get("policyType")):
        kind = "policy"
    else:
        kind = None
    if kind is None:
        return None
    return InsuranceRecord(date=when, type=kind)


def _damage_severity(raw: Mapping[str, Any]) -> str:
    severity = raw.get("severity")
    if isinstance(severity, str):
        lowered = severity.strip().lower()
        if "minor" in lowered or lowered == "low":
            return "minor"
        if "major" in lowered or lowered in ("high", "severe"):
            return "major"
    level = raw.get("level")
    if level is not None and not isinstance(level, bool):
        lowered = str(level).strip().lower()
        if lowered in ("low", "1"):
            return "minor"
        if lowered in ("high", "2"):
            return "major"
    return "minor"


def normalize_damage_record(raw: Any) -> DamageRecord | None:
    if not isinstance(raw, Mapping):
        return None
    when = _first(raw, DAMAGE_DATE_FIELDS, parse_date)
    description = _first(raw, DAMAGE_DESCRIPTION_FIELDS, _non_empty_str)
    if when is None or description is None:
        return None
    return DamageRecord(date=when, severity=_damage_severity(raw), description=description)


def _joined_items(value: Any) -> str | None:
    if not isinstance(value, (list, tuple)):
        return None
    parts = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return "; ".join(parts) if parts else None


def normalize_service_record(raw: Any) -> ServiceRecord | None:
    if not isinstance(raw, Mapping):
        return None
    when = _first(raw, SERVICE_DATE_FIELDS, parse_date)
    kind = _first(raw, SERVICE_TYPE_FIELDS, _non_empty_str)
    if when is None or kind is None:
        return None
    description = _non_empty_str(raw.get("description"))
    if description is None:
        description = _first(raw, ("items", "operations"), _joined_items)
    return ServiceRecord(date=when, type=kind, description=description)


# ── List Normalizers ────────────────────────────────────────────────

def _normalize_many(raw_records: Iterable[Any] | None, normalize: Callable[[Any], T | None]) -> list[T]:
    out: list[T] = []
    seen: set[T] = set()
    if not isinstance(raw_records, (list, tuple)):
        return out
    for raw in raw_records:
        record = normalize(raw)
        if record is None or record in seen:
            continue
        seen.add(record)
        out.append(record)
    return out


def normalize_km_history(raw_records: Iterable[Any] | None) -> list[KmRecord]:
    if not isinstance(raw_records, (list, tuple)):
        return []
    by_date: dict[datetime, KmRecord] = {}
    for raw in raw_records:
        record = normalize_km_record(raw)
        if record is not None and record.date not in by_date:
            by_date[record.date] = record
    return sorted(by_date.values(), key=lambda r: r.date)


def normalize_obd_records(raw_records: Iterable[Any] | None) -> list[ObdRecord]:
    return sorted(_normalize_many(raw_records, normalize_obd_record), key=lambda r: r.date, reverse=True)


def normalize_insurance_records(raw_records: Iterable[Any] | None) -> list[InsuranceRecord]:
    return sorted(_normalize_many(raw_records, normalize_insurance_record), key=lambda r: r.date, reverse=True)


def normalize_damage_records(raw_records: Iterable[Any] | None) -> list[DamageRecord]:
    return sorted(_normalize_many(raw_records, normalize_damage_record), key=lambda r: r.date, reverse=True)


def normalize_service_records(raw_records: Iterable[Any] | None) -> list[ServiceRecord]:
    return sorted(_normalize_many(raw_records, normalize_service_record), key=lambda r: r.date, reverse=True)


def _source_list(raw: Mapping[str, Any], field_name: str) -> Any:
    for key in _SOURCE_KEYS[field_name]:
        if key in raw:
            return raw[key]
    return None


def normalize_all_data_sources(raw: Mapping[str, Any] | None) -> DataSources:
    raw = raw or {}
    return DataSources(
        km_history=tuple(normalize_km_history(_source_list(raw, "km_history"))),
        obd_records=tuple(normalize_obd_records(_source_list(raw, "obd_records"))),
        insurance_records=tuple(normalize_insurance_records(_source_list(raw, "insurance_records"))),
        damage_records=tuple(normalize_damage_records(_source_list(raw, "damage_records"))),
        service_records=tuple(normalize_service_records(_source_list(raw, "service_records"))),
    )
