from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from infra.kafka_topics import INSPECTION_UPLOADS_TOPIC
from inspection.config import QualityPolicy
from inspection.data_models import CaptureMetadata, ImageQuality, Upload, utcnow
from inspection.errors import (
    InspectionError,
    MissingFile,
    NotConfigured,
    NotFound,
    PayloadTooLarge,
    UnparsableFormat,
    UnreadableImage,
)
from inspection.exif import extract_capture_metadata
from inspection.quality import analyze_quality
from inspection.tokens import TokenAuthority
from inspection_service.detection import RoboflowDetector
from inspection_service.media import LocalMediaStore
from inspection_service.messaging import KafkaBus
from inspection_service.storage import InspectionStore

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def coerce_float(value: Any) -> float | None:
    """Best-effort float coercion for client-declared form values."""
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class IncomingFile:
    filename: str | None
    content_type: str | None
    data: bytes


@dataclass(frozen=True)
class DeclaredMetadata:
    category: str | None = None
    lat: float | None = None
    lng: float | None = None
    accuracy: float | None = None

    @classmethod
    def from_form(cls, category: Any = None, lat: Any = None, lng: Any = None, accuracy: Any = None) -> DeclaredMetadata:
        return cls(
            category=str(category) if category not in (None, "") else None,
            lat=coerce_float(lat),
            lng=coerce_float(lng),
            accuracy=coerce_float(accuracy),
        )


class UploadIntakePipeline:
    """Accept one photo for an inspection and enrich it.

    Only the lookup, token check, empty payload and file write can fail a
    request. EXIF, quality and detection failures leave the corresponding
    field ``None``. Detection runs after the response in a tracked task.
    """

    def __init__(
        self,
        store: InspectionStore,
        media: LocalMediaStore,
        tokens: TokenAuthority,
        detector: RoboflowDetector,
        bus: KafkaBus,
        quality_policy: QualityPolicy = QualityPolicy(),
        public_base_url: str = "",
        max_bytes: int = 200 * 1024 * 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.media = media
        self.tokens = tokens
        self.detector = detector
        self.bus = bus
        self.quality_policy = quality_policy
        self.public_base_url = public_base_url
        self.max_bytes = max_bytes
        self.clock = clock
        self._background: set[asyncio.Task[None]] = set()

    async def ingest(
        self,
        inspection_id: str,
        presented_token: str | None,
        file: IncomingFile | None,
        declared: DeclaredMetadata = DeclaredMetadata(),
        origin: str | None = None,
    ) -> Upload:
        inspection = await self.store.get_inspection(inspection_id)
        self.tokens.validate(inspection, presented_token)
        if file is None or not file.data:
            raise MissingFile("No file uploaded")
        if len(file.data) > self.max_bytes:
            raise PayloadTooLarge(f"File exceeds {self.max_bytes} bytes")

        stored = await self.media.save(file.data, file.filename)

        exif = await self._extract(stored.filename, file.data)
        quality = await self._analyze(stored.filename, file.data)

        now = self.clock()
        upload = Upload(
            id=str(uuid.uuid4()),
            inspection_id=inspection_id,
            filename=stored.filename,
            original_filename=file.filename or stored.filename,
            path=stored.path,
            mime_type=file.content_type or DEFAULT_MIME_TYPE,
            size=stored.size,
            uploaded_at=now,
            category=declared.category,
            lat=declared.lat,
            lng=declared.lng,
            accuracy=declared.accuracy,
            exif=exif,
            quality=quality,
        )
        updated = await self.store.append_upload(upload, now)
        logger.info(
            "Upload accepted",
            extra={"extra_data": {"inspection_id": inspection_id, "upload_id": upload.id, "status": updated.status}},
        )

        await self.bus.publish(
            INSPECTION_UPLOADS_TOPIC,
            {
                "event": "upload_accepted",
                "inspection_id": inspection_id,
                "upload_id": upload.id,
                "category": upload.category,
                "status": updated.status,
                "uploaded_at": upload.to_dict()["uploaded_at"],
            },
            key=inspection_id,
        )

        if self.detector.enabled and upload.category:
            self._schedule_detection(upload, origin)
        return upload

    async def _extract(self, filename: str, data: bytes) -> CaptureMetadata | None:
        try:
            return await asyncio.to_thread(extract_capture_metadata, data)
        except UnparsableFormat as exc:
            logger.warning("EXIF extraction failed for %s: %s", filename, exc.message)
            return None

    async def _analyze(self, filename: str, data: bytes) -> ImageQuality | None:
        try:
            return await asyncio.to_thread(analyze_quality, data, self.quality_policy)
        except UnreadableImage as exc:
            logger.warning("Quality analysis failed for %s: %s", filename, exc.message)
            return None

    def image_url(self, upload: Upload, origin: str | None) -> str | None:
        base = self.public_base_url or origin
        if not base:
            return None
        return self.media.public_url(upload.path, base)

    def _schedule_detection(self, upload: Upload, origin: str | None) -> None:
        image_url = self.image_url(upload, origin)
        if image_url is None:
            logger.warning("No public URL for upload %s, skipping detection", upload.id)
            return
        task = asyncio.create_task(self._detect_in_background(upload.id, image_url))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _detect_in_background(self, upload_id: str, image_url: str) -> None:
        try:
            detection = await self.detector.detect(image_url)
            await self.store.attach_detection(upload_id, detection)
            logger.info("Detection attached to upload %s (%d predictions)", upload_id, len(detection.predictions))
        except InspectionError as exc:
            logger.warning("Background detection failed for upload %s: %s", upload_id, exc.message)
        except Exception:
            logger.exception("Unexpected error in background detection for upload %s", upload_id)

    async def run_detection(self, inspection_id: str, upload_id: str, origin: str | None = None) -> Upload:
        """Detect damage for an existing upload now; provider errors propagate."""
        upload = await self.store.get_upload(upload_id)
        if upload is None or upload.inspection_id != inspection_id:
            raise NotFound("Upload not found")
        if not self.detector.enabled:
            raise NotConfigured("Damage detection not configured")
        image_url = self.image_url(upload, origin)
        if image_url is None:
            raise NotConfigured("No public base URL for uploaded media")
        detection = await self.detector.detect(image_url)
        return await self.store.attach_detection(upload_id, detection)

    async def drain(self) -> None:
        """Wait for in-flight background detections."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
