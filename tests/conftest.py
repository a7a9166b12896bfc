import io
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from PIL import ExifTags, Image
from PIL.TiffImagePlugin import IFDRational

from inspection.data_models import Inspection, Upload

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

# Pittsburgh, PA
PITTSBURGH_DMS = ((40, 26, 46), "N", (79, 58, 56), "W")


@pytest.fixture
def fixed_now():
    return FIXED_NOW


def _rational(dms):
    return tuple(IFDRational(v, 1) for v in dms)


@pytest.fixture
def make_image():
    def _make(size=(1024, 768), color=(120, 120, 120), fmt="JPEG", mode="RGB", exif=None):
        img = Image.new(mode, size, color)
        buf = io.BytesIO()
        if exif is None:
            img.save(buf, fmt)
        else:
            img.save(buf, fmt, exif=exif)
        return buf.getvalue()

    return _make


@pytest.fixture
def make_exif():
    def _build(
        gps=PITTSBURGH_DMS,
        include_lng=True,
        make="Apple",
        model="iPhone 14",
        original="2024:04:30 09:15:00",
        generic="2024:04:30 10:00:00",
        orientation=1,
    ):
        exif = Image.Exif()
        if make is not None:
            exif[ExifTags.Base.Make] = make
        if model is not None:
            exif[ExifTags.Base.Model] = model
        if orientation is not None:
            exif[ExifTags.Base.Orientation] = orientation
        if generic is not None:
            exif[ExifTags.Base.DateTime] = generic
        if original is not None:
            exif[ExifTags.IFD.Exif] = {ExifTags.Base.DateTimeOriginal: original}
        if gps is not None:
            lat, lat_ref, lng, lng_ref = gps
            gps_ifd = {
                ExifTags.GPS.GPSLatitudeRef: lat_ref,
                ExifTags.GPS.GPSLatitude: _rational(lat),
            }
            if include_lng:
                gps_ifd[ExifTags.GPS.GPSLongitudeRef] = lng_ref
                gps_ifd[ExifTags.GPS.GPSLongitude] = _rational(lng)
            exif[ExifTags.IFD.GPSInfo] = gps_ifd
        return exif

    return _build


@pytest.fixture
def make_inspection():
    def _make(**overrides):
        fields = {
            "id": "insp-1",
            "token_hash": "0" * 64,
            "token_expiry": FIXED_NOW + timedelta(hours=48),
            "created_at": FIXED_NOW,
        }
        fields.update(overrides)
        return Inspection(**fields)

    return _make


@pytest.fixture
def make_upload():
    def _make(inspection_id="insp-1", **overrides):
        upload_id = overrides.pop("id", str(uuid.uuid4()))
        fields = {
            "id": upload_id,
            "inspection_id": inspection_id,
            "filename": f"{upload_id}.jpg",
            "original_filename": "photo.jpg",
            "path": f"/uploads/{upload_id}.jpg",
            "mime_type": "image/jpeg",
            "size": 1024,
            "uploaded_at": FIXED_NOW,
        }
        fields.update(overrides)
        return Upload(**fields)

    return _make
