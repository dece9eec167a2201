from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


EVIDENCE_SOURCE_NAMES: Dict[str, str] = {
    "km": "km_history",
    "obd": "obd_records",
    "insurance": "insurance_records",
    "damage": "damage_records",
    "service": "service_records",
}


@dataclass(frozen=True)
class VioConfig:
    version: str = "1.0"
    schema_version: str = "1.1"
    odometer_anomaly_base_confidence: int = 95
    rollback_high_threshold: int = 70
    rollback_medium_threshold: int = 40
    structural_high_threshold: int = 70
    structural_moderate_threshold: int = 40
    mechanical_signal_threshold: int = 50
    mechanical_high_threshold: int = 70
    service_gap_signal_threshold: int = 60
    service_gap_high_threshold: int = 80
    insurance_signal_threshold: int = 50
    insurance_high_threshold: int = 70
    low_maintenance_threshold: int = 40
    index_labels: Dict[str, str] = field(
        default_factory=lambda: {
            "trustIndex": "Trust Index",
            "reliabilityIndex": "Reliability Index",
            "maintenanceDiscipline": "Maintenance Discipline",
            "structuralRisk": "Structural Risk",
            "mechanicalRisk": "Mechanical Risk",
            "insuranceRisk": "Insurance Risk",
        }
    )
    index_sources: Dict[str, tuple[str, ...]] = field(
        default_factory=lambda: {
            "trustIndex": ("km", "service", "insurance", "damage"),
            "reliabilityIndex": ("obd", "service"),
            "maintenanceDiscipline": ("service", "km"),
            "structuralRisk": ("damage",),
            "mechanicalRisk": ("obd",),
            "insuranceRisk": ("insurance",),
        }
    )
