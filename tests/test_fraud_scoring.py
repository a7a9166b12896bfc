from datetime import timedelta

import pytest

from inspection.config import ScoringPolicy
from inspection.data_models import (
    CaptureMetadata,
    Detection,
    GeoPoint,
    ImageQuality,
    OdometerHistory,
    OdometerReading,
    OwnershipHistory,
    Prediction,
    VehicleHistoryRecord,
)
from inspection.fraud import ScoringInputs, compute_fraud_assessment, risk_level

DECLARED_VIN = "1HGCM82633A004352"
PLATE_VIN = "1HGCM82633A004353"
NYC = GeoPoint(lat=40.7128, lng=-74.0060)
PITTSBURGH = GeoPoint(lat=40.4406, lng=-79.9959)


def _warned_quality():
    return ImageQuality(
        width=640, height=480, avg_luminance=120, is_dark=False, is_low_resolution=True,
        warnings=("Resolution below 800x600",),
    )


def _detection(fixed_now, n=1):
    preds = tuple(Prediction(label="dent", confidence=0.8, x=10, y=10, width=50, height=40) for _ in range(n))
    return Detection(predictions=preds, detected_at=fixed_now)


def _history(readings=(), transfers=0):
    return VehicleHistoryRecord(
        vin=DECLARED_VIN,
        success=True,
        ownership=OwnershipHistory(count=transfers),
        odometer=OdometerHistory(readings=tuple(OdometerReading(mileage=m) for m in readings)),
    )


@pytest.fixture
def score(fixed_now):
    def _score(inputs, policy=ScoringPolicy()):
        return compute_fraud_assessment(inputs, policy, computed_at=fixed_now)

    return _score


@pytest.fixture
def all_signals(make_inspection, make_upload, fixed_now):
    inspection = make_inspection(vin=DECLARED_VIN, odometer_reading=45_000)
    uploads = [
        make_upload(category="vin_plate", recognized_vin=PLATE_VIN, exif=CaptureMetadata(gps=PITTSBURGH)),
        make_upload(category="front", detection=_detection(fixed_now)),
    ] + [make_upload(category=f"extra_{i}", quality=_warned_quality()) for i in range(6)]
    return ScoringInputs(
        inspection=inspection,
        uploads=uploads,
        history=_history(readings=(52_000, 30_000), transfers=3),
        seller_location=NYC,
    )


# ── Reference scenarios ─────────────────────────────────────────────


def test_empty_inspection_scores_zero(make_inspection, score):
    result = score(ScoringInputs(inspection=make_inspection(), uploads=[]))
    assert result.score == 0
    assert result.level == "low"
    assert result.auto_flag is False
    assert result.flags == ()


def test_vin_plate_mismatch_alone(make_inspection, make_upload, score):
    inspection = make_inspection(vin=DECLARED_VIN)
    uploads = [make_upload(category="vin_plate", recognized_vin=PLATE_VIN)]
    result = score(ScoringInputs(inspection=inspection, uploads=uploads))
    assert result.score == 35
    assert result.level == "medium"
    assert result.flags == (f"VIN mismatch: Plate shows {PLATE_VIN}, seller entered {DECLARED_VIN}",)


def test_matching_or_missing_plate_vin_does_not_trigger(make_inspection, make_upload, score):
    inspection = make_inspection(vin=DECLARED_VIN)
    same = [make_upload(category="vin_plate", recognized_vin=DECLARED_VIN.lower())]
    unread = [make_upload(category="vin_plate")]
    assert score(ScoringInputs(inspection=inspection, uploads=same)).score == 0
    assert score(ScoringInputs(inspection=inspection, uploads=unread)).score == 0


def test_odometer_rollback(make_inspection, score):
    inspection = make_inspection(odometer_reading=45_000)
    result = score(ScoringInputs(inspection=inspection, uploads=[], history=_history(readings=(52_000, 30_000))))
    assert result.score == 30
    assert result.level == "medium"
    assert result.flags == ("Odometer rollback suspected: Declared 45000 mi < History 52000 mi",)


def test_odometer_within_tolerance_or_undeclared(make_inspection, score):
    history = _history(readings=(49_999,))
    assert score(ScoringInputs(make_inspection(odometer_reading=45_000), [], history)).score == 0
    assert score(ScoringInputs(make_inspection(), [], _history(readings=(90_000,)))).score == 0


def test_six_low_quality_photos(make_inspection, make_upload, score):
    uploads = [make_upload(quality=_warned_quality()) for _ in range(6)]
    result = score(ScoringInputs(inspection=make_inspection(), uploads=uploads))
    assert result.score == 10
    assert result.level == "low"
    assert result.flags == ("6 low-quality photos may be hiding damage",)


def test_five_low_quality_photos_do_not_trigger(make_inspection, make_upload, score):
    uploads = [make_upload(quality=_warned_quality()) for _ in range(5)]
    assert score(ScoringInputs(inspection=make_inspection(), uploads=uploads)).score == 0


# ── Individual signals ──────────────────────────────────────────────


def test_undisclosed_damage(make_inspection, make_upload, score, fixed_now):
    uploads = [make_upload(detection=_detection(fixed_now, n=2)), make_upload(detection=_detection(fixed_now, n=0))]
    result = score(ScoringInputs(inspection=make_inspection(), uploads=uploads))
    assert result.score == 20
    assert result.flags == ("AI detected 1 damaged areas not disclosed by seller",)

    disclosed = make_inspection(seller_disclosed_damage=True)
    assert score(ScoringInputs(inspection=disclosed, uploads=uploads)).score == 0


def test_title_flip(make_inspection, score):
    result = score(ScoringInputs(inspection=make_inspection(), uploads=[], history=_history(transfers=2)))
    assert result.score == 15
    assert result.flags == ("Potential flip: 2 ownership transfers in short period",)
    assert score(ScoringInputs(make_inspection(), [], _history(transfers=1))).score == 0


def test_gps_mismatch_uses_distance_threshold(make_inspection, make_upload, score):
    far = [make_upload(exif=CaptureMetadata(gps=PITTSBURGH))]
    near = [make_upload(exif=CaptureMetadata(gps=GeoPoint(lat=40.75, lng=-73.99)))]
    result = score(ScoringInputs(make_inspection(), far, seller_location=NYC))
    assert result.score == 25
    assert result.flags == ("GPS location mismatch: Photos taken outside seller's claimed area",)
    assert score(ScoringInputs(make_inspection(), near, seller_location=NYC)).score == 0
    assert score(ScoringInputs(make_inspection(), far, seller_location=None)).score == 0


# ── Aggregation properties ──────────────────────────────────────────


def test_all_signals_clamp_to_100_in_declaration_order(all_signals, score):
    result = score(all_signals)
    assert result.score == 100
    assert result.level == "high"
    assert result.auto_flag is True
    assert [f.split(":")[0].split(" ")[0] for f in result.flags] == [
        "GPS", "Odometer", "AI", "VIN", "Potential", "6",
    ]


def test_threshold_boundary():
    assert risk_level(29) == "low"
    assert risk_level(30) == "medium"
    assert risk_level(69) == "medium"
    assert risk_level(70) == "high"


def test_score_of_69_and_70(make_inspection, make_upload, score):
    inspection = make_inspection(vin=DECLARED_VIN)
    uploads = [make_upload(category="vin_plate", recognized_vin=PLATE_VIN, exif=CaptureMetadata(gps=PITTSBURGH))]
    uploads += [make_upload(quality=_warned_quality()) for _ in range(6)]
    inputs = ScoringInputs(inspection=inspection, uploads=uploads, seller_location=NYC)

    at_69 = score(inputs, ScoringPolicy(image_quality_weight=9))
    assert (at_69.score, at_69.level, at_69.auto_flag) == (69, "medium", False)
    at_70 = score(inputs)
    assert (at_70.score, at_70.level, at_70.auto_flag) == (70, "high", True)


def test_adding_a_trigger_never_lowers_the_score(make_inspection, make_upload, score, fixed_now):
    base = ScoringInputs(inspection=make_inspection(vin=DECLARED_VIN, odometer_reading=45_000), uploads=[])
    base_score = score(base).score
    variants = [
        ScoringInputs(base.inspection, [make_upload(exif=CaptureMetadata(gps=PITTSBURGH))], seller_location=NYC),
        ScoringInputs(base.inspection, [], history=_history(readings=(60_000,))),
        ScoringInputs(base.inspection, [make_upload(detection=_detection(fixed_now))]),
        ScoringInputs(base.inspection, [make_upload(category="vin_plate", recognized_vin=PLATE_VIN)]),
        ScoringInputs(base.inspection, [], history=_history(transfers=4)),
        ScoringInputs(base.inspection, [make_upload(quality=_warned_quality()) for _ in range(7)]),
    ]
    for inputs in variants:
        result = score(inputs)
        assert result.score >= base_score
        assert 0 <= result.score <= 100


def test_rescoring_unchanged_inputs_is_identical(all_signals, score):
    first = score(all_signals)
    second = score(all_signals)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_assessment_records_inspection_and_vin(all_signals, fixed_now):
    result = compute_fraud_assessment(all_signals, computed_at=fixed_now + timedelta(minutes=5))
    assert result.inspection_id == "insp-1"
    assert result.vin == DECLARED_VIN
    assert result.computed_at == fixed_now + timedelta(minutes=5)
