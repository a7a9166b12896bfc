from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


InspectionStatus = Literal["pending", "submitted", "flagged", "completed"]
RiskLevel = Literal["low", "medium", "high"]
Severity = Literal["minor", "moderate", "severe"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GeoPoint | None:
        if not data or data.get("lat") is None or data.get("lng") is None:
            return None
        return cls(lat=float(data["lat"]), lng=float(data["lng"]))


# ── Upload-derived signals ──────────────────────────────────────────

@dataclass(frozen=True)
class CaptureMetadata:
    gps: GeoPoint | None = None
    timestamp: str | None = None
    make: str | None = None
    model: str | None = None
    orientation: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "gps": None if self.gps is None else self.gps.to_dict(),
            "timestamp": self.timestamp,
            "make": self.make,
            "model": self.model,
            "orientation": self.orientation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CaptureMetadata | None:
        if data is None:
            return None
        return cls(
            gps=GeoPoint.from_dict(data.get("gps")),
            timestamp=data.get("timestamp"),
            make=data.get("make"),
            model=data.get("model"),
            orientation=data.get("orientation"),
        )


@dataclass(frozen=True)
class ImageQuality:
    width: int
    height: int
    avg_luminance: int
    is_dark: bool
    is_low_resolution: bool
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "avg_luminance": self.avg_luminance,
            "is_dark": self.is_dark,
            "is_low_resolution": self.is_low_resolution,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ImageQuality | None:
        if data is None:
            return None
        return cls(
            width=int(data["width"]),
            height=int(data["height"]),
            avg_luminance=int(data["avg_luminance"]),
            is_dark=bool(data["is_dark"]),
            is_low_resolution=bool(data["is_low_resolution"]),
            warnings=tuple(data.get("warnings") or ()),
        )


@dataclass(frozen=True)
class Prediction:
    label: str
    confidence: float
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "confidence": self.confidence,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Prediction:
        return cls(
            label=str(data["label"]),
            confidence=float(data["confidence"]),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
        )


@dataclass(frozen=True)
class Detection:
    predictions: tuple[Prediction, ...]
    detected_at: datetime
    provider: str = "roboflow"
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "predictions": [p.to_dict() for p in self.predictions],
            "detected_at": _iso(self.detected_at),
            "provider": self.provider,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Detection | None:
        if data is None:
            return None
        return cls(
            predictions=tuple(Prediction.from_dict(p) for p in data.get("predictions") or ()),
            detected_at=parse_instant(data["detected_at"]),
            provider=data.get("provider") or "roboflow",
            model=data.get("model"),
        )


@dataclass(frozen=True)
class Upload:
    id: str
    inspection_id: str
    filename: str
    original_filename: str
    path: str
    mime_type: str
    size: int
    uploaded_at: datetime
    category: str | None = None
    lat: float | None = None
    lng: float | None = None
    accuracy: float | None = None
    exif: CaptureMetadata | None = None
    quality: ImageQuality | None = None
    detection: Detection | None = None
    recognized_vin: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "inspection_id": self.inspection_id,
            "filename": self.filename,
            "original_filename": self.original_filename,
            "path": self.path,
            "mime_type": self.mime_type,
            "size": self.size,
            "uploaded_at": _iso(self.uploaded_at),
            "category": self.category,
            "lat": self.lat,
            "lng": self.lng,
            "accuracy": self.accuracy,
            "exif": None if self.exif is None else self.exif.to_dict(),
            "quality": None if self.quality is None else self.quality.to_dict(),
            "detection": None if self.detection is None else self.detection.to_dict(),
            "recognized_vin": self.recognized_vin,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Upload:
        return cls(
            id=data["id"],
            inspection_id=data["inspection_id"],
            filename=data["filename"],
            original_filename=data["original_filename"],
            path=data["path"],
            mime_type=data["mime_type"],
            size=int(data["size"]),
            uploaded_at=parse_instant(data["uploaded_at"]),
            category=data.get("category"),
            lat=data.get("lat"),
            lng=data.get("lng"),
            accuracy=data.get("accuracy"),
            exif=CaptureMetadata.from_dict(data.get("exif")),
            quality=ImageQuality.from_dict(data.get("quality")),
            detection=Detection.from_dict(data.get("detection")),
            recognized_vin=data.get("recognized_vin"),
        )


# ── Scoring output ──────────────────────────────────────────────────

@dataclass(frozen=True)
class FraudAssessment:
    inspection_id: str
    vin: str | None
    score: int
    level: RiskLevel
    auto_flag: bool
    flags: tuple[str, ...]
    computed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "inspection_id": self.inspection_id,
            "vin": self.vin,
            "score": self.score,
            "level": self.level,
            "auto_flag": self.auto_flag,
            "flags": list(self.flags),
            "computed_at": _iso(self.computed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FraudAssessment | None:
        if data is None:
            return None
        return cls(
            inspection_id=data["inspection_id"],
            vin=data.get("vin"),
            score=int(data["score"]),
            level=data["level"],
            auto_flag=bool(data["auto_flag"]),
            flags=tuple(data.get("flags") or ()),
            computed_at=parse_instant(data["computed_at"]),
        )


# ── Inspection ──────────────────────────────────────────────────────

DECLARED_FIELDS = (
    "order_id",
    "buyer_email",
    "seller_phone",
    "seller_email",
    "price",
    "vin",
    "odometer_reading",
    "seller_zip",
    "notes",
    "seller_disclosed_damage",
    "tire",
)


@dataclass(frozen=True)
class Inspection:
    id: str
    token_hash: str
    token_expiry: datetime
    created_at: datetime
    status: InspectionStatus = "pending"
    order_id: str | None = None
    buyer_email: str | None = None
    seller_phone: str | None = None
    seller_email: str | None = None
    price: float | None = None
    vin: str | None = None
    odometer_reading: int | None = None
    seller_zip: str | None = None
    notes: str | None = None
    seller_disclosed_damage: bool = False
    tire: dict[str, Any] | None = None
    fraud_score: FraudAssessment | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self, include_secret: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "token_expiry": _iso(self.token_expiry),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "fraud_score": None if self.fraud_score is None else self.fraud_score.to_dict(),
        }
        for name in DECLARED_FIELDS:
            out[name] = getattr(self, name)
        if include_secret:
            out["token_hash"] = self.token_hash
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Inspection:
        declared = {name: data.get(name) for name in DECLARED_FIELDS}
        declared["seller_disclosed_damage"] = bool(declared["seller_disclosed_damage"])
        return cls(
            id=data["id"],
            token_hash=data["token_hash"],
            token_expiry=parse_instant(data["token_expiry"]),
            created_at=parse_instant(data["created_at"]),
            status=data.get("status") or "pending",
            fraud_score=FraudAssessment.from_dict(data.get("fraud_score")),
            updated_at=parse_instant(data.get("updated_at")),
            completed_at=parse_instant(data.get("completed_at")),
            **declared,
        )


# ── Vehicle history ─────────────────────────────────────────────────

@dataclass(frozen=True)
class VehicleDescriptor:
    year: int | None = None
    make: str | None = None
    model: str | None = None
    trim: str | None = None


@dataclass(frozen=True)
class TitleHistory:
    brands: tuple[str, ...] = ()
    salvage: bool = False
    rebuilt: bool = False
    junk: bool = False


@dataclass(frozen=True)
class AccidentHistory:
    count: int = 0
    records: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class OwnershipHistory:
    count: int = 0
    last_date: str | None = None
    type: str | None = None


@dataclass(frozen=True)
class OdometerReading:
    mileage: int | None = None
    date: str | None = None


@dataclass(frozen=True)
class OdometerHistory:
    readings: tuple[OdometerReading, ...] = ()
    rollback: bool = False

    @property
    def last_reading(self) -> OdometerReading | None:
        # Provider lists readings newest first.
        return self.readings[0] if self.readings else None


@dataclass(frozen=True)
class RecallHistory:
    count: int = 0
    records: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class VehicleHistoryRecord:
    vin: str
    success: bool = False
    vehicle: VehicleDescriptor = field(default_factory=VehicleDescriptor)
    title: TitleHistory = field(default_factory=TitleHistory)
    accidents: AccidentHistory = field(default_factory=AccidentHistory)
    ownership: OwnershipHistory = field(default_factory=OwnershipHistory)
    odometer: OdometerHistory = field(default_factory=OdometerHistory)
    recalls: RecallHistory = field(default_factory=RecallHistory)
    market_value: Any = None
    warranty: Any = None

    def to_dict(self) -> dict[str, Any]:
        last = self.odometer.last_reading
        return {
            "vin": self.vin,
            "success": self.success,
            "vehicle": {
                "year": self.vehicle.year,
                "make": self.vehicle.make,
                "model": self.vehicle.model,
                "trim": self.vehicle.trim,
            },
            "title": {
                "brands": list(self.title.brands),
                "salvage": self.title.salvage,
                "rebuilt": self.title.rebuilt,
                "junk": self.title.junk,
            },
            "accidents": {"count": self.accidents.count, "records": list(self.accidents.records)},
            "ownership": {
                "count": self.ownership.count,
                "last_date": self.ownership.last_date,
                "type": self.ownership.type,
            },
            "odometer": {
                "readings": [{"mileage": r.mileage, "date": r.date} for r in self.odometer.readings],
                "last_reading": None if last is None else {"mileage": last.mileage, "date": last.date},
                "rollback": self.odometer.rollback,
            },
            "recalls": {"count": self.recalls.count, "records": list(self.recalls.records)},
            "market_value": self.market_value,
            "warranty": self.warranty,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VehicleHistoryRecord:
        vehicle = data.get("vehicle") or {}
        title = data.get("title") or {}
        accidents = data.get("accidents") or {}
        ownership = data.get("ownership") or {}
        odometer = data.get("odometer") or {}
        recalls = data.get("recalls") or {}
        return cls(
            vin=data["vin"],
            success=bool(data.get("success")),
            vehicle=VehicleDescriptor(
                year=vehicle.get("year"),
                make=vehicle.get("make"),
                model=vehicle.get("model"),
                trim=vehicle.get("trim"),
            ),
            title=TitleHistory(
                brands=tuple(title.get("brands") or ()),
                salvage=bool(title.get("salvage")),
                rebuilt=bool(title.get("rebuilt")),
                junk=bool(title.get("junk")),
            ),
            accidents=AccidentHistory(
                count=int(accidents.get("count") or 0),
                records=tuple(accidents.get("records") or ()),
            ),
            ownership=OwnershipHistory(
                count=int(ownership.get("count") or 0),
                last_date=ownership.get("last_date"),
                type=ownership.get("type"),
            ),
            odometer=OdometerHistory(
                readings=tuple(
                    OdometerReading(mileage=r.get("mileage"), date=r.get("date"))
                    for r in odometer.get("readings") or ()
                ),
                rollback=bool(odometer.get("rollback")),
            ),
            recalls=RecallHistory(
                count=int(recalls.get("count") or 0),
                records=tuple(recalls.get("records") or ()),
            ),
            market_value=data.get("market_value"),
            warranty=data.get("warranty"),
        )
