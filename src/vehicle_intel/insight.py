from __future__ import annotations

from vehicle_intel.data_models import DataSources, DerivedMetrics, IntelligenceIndexes


def generate_insight(
    derived: DerivedMetrics,
    indexes: IntelligenceIndexes,
    data_sources: DataSources,
) -> str:
    insights: list[str] = []

    if derived.odometer_anomaly:
        insights.append(
            "WARNING: Odometer anomaly detected. Readings may have been manipulated or the device may be faulty."
        )

    if derived.structural_risk > 70:
        insights.append(
            "High structural risk: the damage history is significant. A thorough pre-purchase inspection is recommended."
        )
    elif derived.structural_risk > 40:
        insights.append("Moderate structural risk: past damage was observed. An expert inspection is recommended.")

    if derived.mechanical_risk > 70:
        insights.append("High mechanical risk: multiple fault codes were detected. Immediate service is recommended.")
    elif derived.mechanical_risk > 40:
        insights.append("Moderate mechanical risk: some fault codes were recorded. Service may be needed soon.")

    if derived.service_gap_score > 70:
        insights.append("Service gaps: long maintenance intervals were detected. Regular servicing is required.")

    if derived.insurance_risk > 60:
        insights.append("Insurance risk: past claims or policy lapses are on record.")

    if derived.structural_risk < 20 and derived.mechanical_risk < 20 and derived.service_gap_score < 30:
        insights.append("Vehicle appears to be in good condition with regular maintenance.")

    populated = data_sources.populated_source_count()
    if populated < 3:
        insights.append(
            f"Limited data: only {populated}/5 data sources returned records. The assessment is incomplete."
        )

    trust = indexes.trust_index
    if trust < 40:
        insights.append(f"Low trust index ({trust}/100): the records contain inconsistencies or red flags.")
    elif trust < 70:
        insights.append(f"Moderate trust index ({trust}/100): some concerns exist. Further inspection is advised.")
    else:
        insights.append(f"High trust index ({trust}/100): the vehicle appears trustworthy.")

    return "\n\n".join(insights)


def generate_status_badge(
    trust_index: int,
    structural_risk: int,
    mechanical_risk: int,
    odometer_anomaly: bool,
) -> str:
    if odometer_anomaly:
        return "Anomaly detected"
    if structural_risk > 70 or mechanical_risk > 70:
        return "High risk"
    if structural_risk > 40 or mechanical_risk > 40:
        return "Moderate risk"
    if trust_index > 80:
        return "Good condition"
    if trust_index > 60:
        return "Acceptable"
    return "Suspicious"


def generate_summary_line(
    trust_index: int,
    reliability_index: int,
    damage_count: int,
    service_count: int,
) -> str:
    parts = [f"Trust: {trust_index}/100", f"Reliability: {reliability_index}/100"]
    if damage_count > 0:
        parts.append(f"{damage_count} damage records")
    if service_count > 0:
        parts.append(f"{service_count} service records")
    return " · ".join(parts)
