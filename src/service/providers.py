from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

import httpx

from service.settings import ServiceSettings
from vehicle_intel.aggregator import VehicleDataProvider, utc_now

logger = logging.getLogger(__name__)

RawBundle = dict[str, list[dict[str, Any]]]

_SOURCE_ENDPOINTS: dict[str, str] = {
    "kmHistory": "km-history",
    "obdRecords": "obd-records",
    "insuranceRecords": "insurance-records",
    "damageRecords": "damage-records",
    "serviceRecords": "service-records",
}

_MOCK_FAULT_CODES = ("P0300", "P0101", "P0420", "P0172", "P0401", "P0011")
_MOCK_INSURANCE_TYPES = ("renewal", "renewal", "claim", "inquiry", "lapse")
_MOCK_SERVICE_CATALOG: dict[str, tuple[str, ...]] = {
    "routine": ("Oil change", "Filter replacement", "Tire rotation", "Brake inspection"),
    "maintenance": ("Battery replacement", "Brake pad replacement", "Coolant flush", "Transmission fluid"),
    "repair": ("Engine repair", "Transmission repair", "Electrical repair", "Suspension repair"),
    "recall": ("Software update", "Component replacement", "Safety check"),
}


def empty_bundle() -> RawBundle:
    return {key: [] for key in _SOURCE_ENDPOINTS}


class MockVehicleDataProvider:
    """Synthetic but reproducible records: the same vehicle id and month always yield the same data."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock

    @staticmethod
    def _rng(vehicle_id: str) -> random.Random:
        digest = hashlib.sha256(vehicle_id.encode("utf-8")).hexdigest()
        return random.Random(int(digest[:16], 16))

    def _anchor(self) -> datetime:
        now = self.clock()
        return datetime(now.year, now.month, 1, tzinfo=timezone.utc)

    @staticmethod
    def _days_ago(anchor: datetime, days: float) -> str:
        return (anchor - timedelta(days=days)).date().isoformat()

    def km_history(self, rng: random.Random, anchor: datetime) -> list[dict[str, Any]]:
        base_km = rng.randint(50_000, 200_000)
        monthly = rng.randint(1_000, 3_000)
        # one vehicle in twenty carries a rollback somewhere in the last year
        rollback_month = rng.randint(1, 10) if rng.random() < 0.05 else None
        records = []
        for i in range(11, -1, -1):
            month = anchor.month - i
            year = anchor.year + (month - 1) // 12
            month = (month - 1) % 12 + 1
            km = base_km + monthly * (12 - i)
            if rollback_month == i:
                km -= 20_000
            records.append({"date": f"{year:04d}-{month:02d}-01", "km": max(0, km)})
        return records

    def obd_records(self, rng: random.Random, anchor: datetime) -> list[dict[str, Any]]:
        return [
            {"date": self._days_ago(anchor, rng.uniform(0, 180)), "faultCode": rng.choice(_MOCK_FAULT_CODES)}
            for _ in range(rng.randint(1, 4))
        ]

    def insurance_records(self, rng: random.Random, anchor: datetime) -> list[dict[str, Any]]:
        return [
            {"date": self._days_ago(anchor, rng.uniform(0, 3 * 365)), "type": rng.choice(_MOCK_INSURANCE_TYPES)}
            for _ in range(8)
        ]

    def damage_records(self, rng: random.Random, anchor: datetime) -> list[dict[str, Any]]:
        if rng.random() >= 0.6:
            return []
        records = []
        for _ in range(rng.randint(1, 3)):
            severity = "minor" if rng.random() < 0.7 else "major"
            records.append(
                {
                    "date": self._days_ago(anchor, rng.uniform(0, 3 * 365)),
                    "severity": severity,
                    "description": "Dent/scratch" if severity == "minor" else "Structural damage",
                }
            )
        return records

    def service_records(self, rng: random.Random, anchor: datetime) -> list[dict[str, Any]]:
        records = []
        for _ in range(rng.randint(6, 12)):
            kind = rng.choice(sorted(_MOCK_SERVICE_CATALOG))
            records.append(
                {
                    "date": self._days_ago(anchor, rng.uniform(0, 3 * 365)),
                    "type": kind,
                    "description": rng.choice(_MOCK_SERVICE_CATALOG[kind]),
                }
            )
        return records

    async def fetch_all(self, vehicle_id: str, vin: str, plate: str) -> RawBundle:
        rng = self._rng(vehicle_id)
        anchor = self._anchor()
        return {
            "kmHistory": self.km_history(rng, anchor),
            "obdRecords": self.obd_records(rng, anchor),
            "insuranceRecords": self.insurance_records(rng, anchor),
            "damageRecords": self.damage_records(rng, anchor),
            "serviceRecords": self.service_records(rng, anchor),
        }


class ApiVehicleDataProvider:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def fetch_all(self, vehicle_id: str, vin: str, plate: str) -> RawBundle:
        params = {k: v for k, v in {"vin": vin, "plate": plate}.items() if v}
        bundle = empty_bundle()
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, headers=self._headers(), transport=self.transport
        ) as client:
            for key, endpoint in _SOURCE_ENDPOINTS.items():
                resp = await client.get(f"{self.base_url}/vehicles/{vehicle_id}/{endpoint}", params=params)
                resp.raise_for_status()
                payload = resp.json()
                if isinstance(payload, Mapping):
                    payload = payload.get("items") or payload.get("data") or []
                bundle[key] = list(payload)
        return bundle


class InMemoryVehicleDataProvider:
    def __init__(self, bundles: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self.bundles: dict[str, Mapping[str, Any]] = dict(bundles or {})
        self.fetch_count = 0

    def put(self, vehicle_id: str, bundle: Mapping[str, Any]) -> None:
        self.bundles[vehicle_id] = bundle

    async def fetch_all(self, vehicle_id: str, vin: str, plate: str) -> Mapping[str, Any]:
        self.fetch_count += 1
        return self.bundles.get(vehicle_id) or empty_bundle()


class JsonFileVehicleDataProvider:
    """Reads ``<data_dir>/<vehicle_id>.json``; a missing file means no records."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    async def fetch_all(self, vehicle_id: str, vin: str, plate: str) -> Mapping[str, Any]:
        path = self.data_dir / f"{vehicle_id}.json"
        if not path.is_file():
            logger.info("No data file for vehicle %s at %s", vehicle_id, path)
            return empty_bundle()
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return json.loads(text)


def get_vehicle_data_provider(settings: ServiceSettings) -> VehicleDataProvider:
    if settings.vehicle_data_source == "api":
        logger.info("Using ApiVehicleDataProvider at %s", settings.vehicle_api_base_url)
        return ApiVehicleDataProvider(
            base_url=settings.vehicle_api_base_url,
            token=settings.vehicle_api_token,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    if settings.vehicle_data_source == "file":
        logger.info("Using JsonFileVehicleDataProvider at %s", settings.vehicle_data_dir)
        return JsonFileVehicleDataProvider(settings.vehicle_data_dir)
    logger.info("Using MockVehicleDataProvider")
    return MockVehicleDataProvider()
