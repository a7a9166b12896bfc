"""Damage conventions shared by reviewers and reports.

Detector confidences map to severities, severities and damage types map to
reconditioning cost estimates, and upload categories map to vehicle
locations. None of this feeds the fraud score.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

from inspection.config import SeverityPolicy
from inspection.data_models import Prediction, Severity, Upload


_BASE_COSTS: dict[str, dict[str, int]] = {
    "dent": {"minor": 150, "moderate": 450, "severe": 850},
    "scratch": {"minor": 100, "moderate": 300, "severe": 600},
    "crack": {"minor": 200, "moderate": 500, "severe": 1200},
    "rust": {"minor": 250, "moderate": 600, "severe": 1500},
    "paint_damage": {"minor": 75, "moderate": 250, "severe": 500},
    "glass_damage": {"minor": 150, "moderate": 350, "severe": 800},
    "bumper_damage": {"minor": 200, "moderate": 550, "severe": 1100},
    "panel_damage": {"minor": 300, "moderate": 700, "severe": 1400},
}

_LOCATIONS = {
    "front": "Front End",
    "rear": "Rear End",
    "driver_side": "Driver Side",
    "passenger_side": "Passenger Side",
    "front_driver_angle": "Front Bumper - Driver Side",
    "front_passenger_angle": "Front Bumper - Passenger Side",
    "rear_driver_angle": "Rear Quarter Panel - Driver Side",
    "rear_passenger_angle": "Rear Quarter Panel - Passenger Side",
    "engine_bay": "Engine Compartment",
    "trunk": "Trunk Area",
    "wheel_driver_front": "Driver Front Wheel",
    "wheel_driver_rear": "Driver Rear Wheel",
    "wheel_passenger_front": "Passenger Front Wheel",
    "wheel_passenger_rear": "Passenger Rear Wheel",
    "roof": "Roof",
    "interior_front": "Interior Front",
    "interior_rear": "Interior Rear",
}

_DESCRIPTIONS = {
    "dent": {
        "minor": "Shallow dent, paintless dent repair recommended",
        "moderate": "Medium-depth dent with possible paint damage, body filler may be needed",
        "severe": "Deep dent with structural damage, panel replacement recommended",
    },
    "scratch": {
        "minor": "Surface-level scratch through clear coat only",
        "moderate": "Scratch through paint layer, touch-up and blending required",
        "severe": "Deep scratch exposing metal, requires panel refinishing",
    },
    "crack": {
        "minor": "Hairline crack, can be repaired with filler",
        "moderate": "Crack with separation, repair or replacement needed",
        "severe": "Structural crack, component replacement required",
    },
}


def severity_for_confidence(confidence: float, policy: SeverityPolicy = SeverityPolicy()) -> Severity:
    if confidence > policy.severe_above:
        return "severe"
    if confidence > policy.moderate_above:
        return "moderate"
    return "minor"


def _damage_key(label: str) -> str:
    return re.sub(r"[^a-z]", "_", label.lower())


def estimate_reconditioning_cost(label: str, severity: Severity, area_px: float) -> int:
    costs = _BASE_COSTS.get(_damage_key(label), _BASE_COSTS["dent"])
    cost = float(costs.get(severity, costs["moderate"]))
    if area_px > 50_000:
        cost *= 1.3
    elif area_px > 20_000:
        cost *= 1.15
    return int(round(cost))


def location_for_category(category: str | None) -> str:
    return _LOCATIONS.get(category or "", "Unknown Location")


def view_for_category(category: str | None) -> str:
    if not category:
        return "front"
    for view in ("front", "rear", "driver", "passenger"):
        if view in category:
            return view
    if "roof" in category or "top" in category:
        return "top"
    return "front"


def describe_damage(label: str, severity: Severity) -> str:
    by_severity = _DESCRIPTIONS.get(label.lower())
    if by_severity and severity in by_severity:
        return by_severity[severity]
    return f"{severity} {label} detected by AI vision system"


@dataclass(frozen=True)
class DamageFinding:
    id: int
    upload_id: str
    category: str | None
    label: str
    severity: Severity
    confidence_pct: int
    location: str
    view: str
    estimated_cost: int
    description: str
    prediction: Prediction

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "upload_id": self.upload_id,
            "category": self.category,
            "type": self.label,
            "severity": self.severity,
            "confidence": self.confidence_pct,
            "location": self.location,
            "view": self.view,
            "size": f"{round(self.prediction.width)}px x {round(self.prediction.height)}px",
            "estimated_cost": self.estimated_cost,
            "description": self.description,
            "bbox": self.prediction.to_dict(),
        }


def analyze_damage(uploads: Sequence[Upload], policy: SeverityPolicy = SeverityPolicy()) -> dict[str, Any]:
    findings: list[DamageFinding] = []
    for upload in uploads:
        if upload.detection is None:
            continue
        for pred in upload.detection.predictions:
            severity = severity_for_confidence(pred.confidence, policy)
            findings.append(
                DamageFinding(
                    id=len(findings) + 1,
                    upload_id=upload.id,
                    category=upload.category,
                    label=pred.label or "Unknown Damage",
                    severity=severity,
                    confidence_pct=int(round(pred.confidence * 100)),
                    location=location_for_category(upload.category),
                    view=view_for_category(upload.category),
                    estimated_cost=estimate_reconditioning_cost(pred.label, severity, pred.area),
                    description=describe_damage(pred.label, severity),
                    prediction=pred,
                )
            )

    summary = {
        "total": len(findings),
        "severe": sum(1 for f in findings if f.severity == "severe"),
        "moderate": sum(1 for f in findings if f.severity == "moderate"),
        "minor": sum(1 for f in findings if f.severity == "minor"),
        "total_cost": sum(f.estimated_cost for f in findings),
    }
    return {"damages": [f.to_dict() for f in findings], "summary": summary}
