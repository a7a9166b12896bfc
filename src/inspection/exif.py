from __future__ import annotations

import io
import logging
from datetime import datetime
from typing import Any

from PIL import ExifTags, Image, UnidentifiedImageError

from inspection.data_models import CaptureMetadata, GeoPoint
from inspection.errors import UnparsableFormat

logger = logging.getLogger(__name__)

_EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"


def _to_degrees(value: Any) -> float | None:
    try:
        degrees, minutes, seconds = value
        return float(degrees) + float(minutes) / 60.0 + float(seconds) / 3600.0
    except (TypeError, ValueError, ZeroDivisionError):
        return None


def _coordinate(gps_ifd: dict[int, Any], value_tag: int, ref_tag: int, negative_ref: str) -> float | None:
    raw = gps_ifd.get(value_tag)
    if raw is None:
        return None
    degrees = _to_degrees(raw)
    if degrees is None:
        return None
    ref = gps_ifd.get(ref_tag)
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", errors="ignore")
    if isinstance(ref, str) and ref.strip().upper() == negative_ref:
        degrees = -degrees
    return degrees


def _gps(exif: Image.Exif) -> GeoPoint | None:
    gps_ifd = exif.get_ifd(ExifTags.IFD.GPSInfo)
    if not gps_ifd:
        return None
    lat = _coordinate(gps_ifd, ExifTags.GPS.GPSLatitude, ExifTags.GPS.GPSLatitudeRef, "S")
    lng = _coordinate(gps_ifd, ExifTags.GPS.GPSLongitude, ExifTags.GPS.GPSLongitudeRef, "W")
    # A lone coordinate is not a location.
    if lat is None or lng is None:
        return None
    return GeoPoint(lat=lat, lng=lng)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    text = str(value).replace("\x00", "").strip()
    return text or None


def _timestamp(value: Any) -> str | None:
    text = _text(value)
    if text is None:
        return None
    try:
        return datetime.strptime(text, _EXIF_DATETIME_FORMAT).isoformat()
    except ValueError:
        return text


def _orientation(value: Any) -> int | None:
    try:
        return None if value is None else int(value)
    except (TypeError, ValueError):
        return None


def extract_capture_metadata(data: bytes) -> CaptureMetadata:
    """Read GPS, capture time, device and orientation from image bytes.

    An image without any metadata segment yields an all-``None`` result;
    only a payload that is not a decodable image raises ``UnparsableFormat``.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            exif = img.getexif()
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as exc:
        raise UnparsableFormat(f"not a parsable image: {exc}") from exc

    if not exif:
        return CaptureMetadata()

    try:
        gps = _gps(exif)
        sub_ifd = exif.get_ifd(ExifTags.IFD.Exif)
    except (OSError, ValueError, SyntaxError) as exc:
        raise UnparsableFormat(f"corrupt metadata segment: {exc}") from exc

    timestamp = _timestamp(sub_ifd.get(ExifTags.Base.DateTimeOriginal))
    if timestamp is None:
        timestamp = _timestamp(exif.get(ExifTags.Base.DateTime))

    return CaptureMetadata(
        gps=gps,
        timestamp=timestamp,
        make=_text(exif.get(ExifTags.Base.Make)),
        model=_text(exif.get(ExifTags.Base.Model)),
        orientation=_orientation(exif.get(ExifTags.Base.Orientation)),
    )
