from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

TOKEN_TTL = timedelta(hours=48)

VIN_PLATE_CATEGORY = "vin_plate"


@dataclass(frozen=True)
class QualityPolicy:
    dark_luminance_threshold: float = 40.0  # 0-255 scale
    min_width: int = 800
    min_height: int = 600


@dataclass(frozen=True)
class ScoringPolicy:
    gps_mismatch_weight: int = 25
    odometer_discrepancy_weight: int = 30
    undisclosed_damage_weight: int = 20
    vin_mismatch_weight: int = 35
    title_flip_weight: int = 15
    image_quality_weight: int = 10

    gps_mismatch_miles: float = 200.0
    odometer_tolerance: int = 5_000
    flip_transfer_count: int = 2
    low_quality_photo_limit: int = 5

    medium_threshold: int = 30
    high_threshold: int = 70
    max_score: int = 100


@dataclass(frozen=True)
class SeverityPolicy:
    severe_above: float = 0.90
    moderate_above: float = 0.75
