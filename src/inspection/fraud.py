"""Fraud scoring engine.

Six independent signals, each with a fixed weight, are evaluated in a fixed
order against an inspection, its uploads and the cached vehicle history. The
score is the capped sum of triggered weights; every triggered signal adds one
human-readable flag. The engine is a pure function: the same inputs (including
``computed_at``) always produce an identical assessment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence

from inspection.config import VIN_PLATE_CATEGORY, ScoringPolicy
from inspection.data_models import (
    FraudAssessment,
    GeoPoint,
    Inspection,
    RiskLevel,
    Upload,
    VehicleHistoryRecord,
    utcnow,
)
from inspection.geo import is_far
from inspection.vin import normalize_vin


@dataclass(frozen=True)
class ScoringInputs:
    inspection: Inspection
    uploads: Sequence[Upload]
    history: VehicleHistoryRecord | None = None
    seller_location: GeoPoint | None = None


@dataclass(frozen=True)
class Signal:
    name: str
    weight: Callable[[ScoringPolicy], int]
    evaluate: Callable[[ScoringInputs, ScoringPolicy], str | None]


def _gps_mismatch(inputs: ScoringInputs, policy: ScoringPolicy) -> str | None:
    if inputs.seller_location is None:
        return None
    points = [u.exif.gps for u in inputs.uploads if u.exif is not None and u.exif.gps is not None]
    if any(is_far(p, inputs.seller_location, policy.gps_mismatch_miles) for p in points):
        return "GPS location mismatch: Photos taken outside seller's claimed area"
    return None


def _odometer_discrepancy(inputs: ScoringInputs, policy: ScoringPolicy) -> str | None:
    declared = inputs.inspection.odometer_reading
    if declared is None or inputs.history is None:
        return None
    last = inputs.history.odometer.last_reading
    if last is None or last.mileage is None:
        return None
    if last.mileage - declared >= policy.odometer_tolerance:
        return f"Odometer rollback suspected: Declared {declared} mi < History {last.mileage} mi"
    return None


def _undisclosed_damage(inputs: ScoringInputs, policy: ScoringPolicy) -> str | None:
    if inputs.inspection.seller_disclosed_damage:
        return None
    damaged = [u for u in inputs.uploads if u.detection is not None and u.detection.predictions]
    if damaged:
        return f"AI detected {len(damaged)} damaged areas not disclosed by seller"
    return None


def _vin_plate_mismatch(inputs: ScoringInputs, policy: ScoringPolicy) -> str | None:
    declared = normalize_vin(inputs.inspection.vin)
    if declared is None:
        return None
    plate = next((u for u in inputs.uploads if u.category == VIN_PLATE_CATEGORY), None)
    if plate is None:
        return None
    recognized = normalize_vin(plate.recognized_vin)
    if recognized is not None and recognized != declared:
        return f"VIN mismatch: Plate shows {recognized}, seller entered {declared}"
    return None


def _title_flip(inputs: ScoringInputs, policy: ScoringPolicy) -> str | None:
    if inputs.history is None:
        return None
    transfers = inputs.history.ownership.count
    if transfers >= policy.flip_transfer_count:
        return f"Potential flip: {transfers} ownership transfers in short period"
    return None


def _image_quality(inputs: ScoringInputs, policy: ScoringPolicy) -> str | None:
    low_quality = sum(1 for u in inputs.uploads if u.quality is not None and u.quality.warnings)
    if low_quality > policy.low_quality_photo_limit:
        return f"{low_quality} low-quality photos may be hiding damage"
    return None


SIGNALS: tuple[Signal, ...] = (
    Signal("gps_mismatch", lambda p: p.gps_mismatch_weight, _gps_mismatch),
    Signal("odometer_discrepancy", lambda p: p.odometer_discrepancy_weight, _odometer_discrepancy),
    Signal("undisclosed_damage", lambda p: p.undisclosed_damage_weight, _undisclosed_damage),
    Signal("vin_plate_mismatch", lambda p: p.vin_mismatch_weight, _vin_plate_mismatch),
    Signal("title_flip", lambda p: p.title_flip_weight, _title_flip),
    Signal("image_quality", lambda p: p.image_quality_weight, _image_quality),
)


def risk_level(score: int, policy: ScoringPolicy = ScoringPolicy()) -> RiskLevel:
    if score < policy.medium_threshold:
        return "low"
    if score < policy.high_threshold:
        return "medium"
    return "high"


def compute_fraud_assessment(
    inputs: ScoringInputs,
    policy: ScoringPolicy = ScoringPolicy(),
    computed_at: datetime | None = None,
) -> FraudAssessment:
    score = 0
    flags: list[str] = []
    for signal in SIGNALS:
        flag = signal.evaluate(inputs, policy)
        if flag is not None:
            score += signal.weight(policy)
            flags.append(flag)

    score = max(0, min(score, policy.max_score))
    return FraudAssessment(
        inspection_id=inputs.inspection.id,
        vin=inputs.inspection.vin,
        score=score,
        level=risk_level(score, policy),
        auto_flag=score >= policy.high_threshold,
        flags=tuple(flags),
        computed_at=computed_at or utcnow(),
    )
