from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, field_validator

from inspection.damage import analyze_damage
from inspection.data_models import Inspection, utcnow
from inspection.errors import InspectionError, NotFound
from inspection.tokens import TokenAuthority
from inspection.vin import VIN_PATTERN, is_valid_vin, normalize_vin
from inspection_service.auth import APIKeyAuth, RateLimiter, presented_token
from inspection_service.detection import RoboflowDetector
from inspection_service.geocoding import ZipGeocoder
from inspection_service.history import VehicleHistoryService, VinAuditClient
from inspection_service.intake import DeclaredMetadata, IncomingFile, UploadIntakePipeline
from inspection_service.logging_config import configure_logging, correlation_id, new_correlation_id
from inspection_service.media import PUBLIC_PREFIX, LocalMediaStore
from inspection_service.messaging import KafkaBus
from inspection_service.scoring import FraudScoringService
from inspection_service.settings import ServiceSettings
from inspection_service.storage import InspectionStore, RedisCache

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class TireRecord(BaseModel):
    """Tread depths in 32nds of an inch, keyed by wheel position."""

    model_config = ConfigDict(extra="allow")

    tread: dict[str, float] | None = None
    size: str | None = Field(default=None, max_length=32)


class DeclaredAttributes(BaseModel):
    order_id: str | None = Field(default=None, max_length=128)
    buyer_email: str | None = Field(default=None, max_length=255)
    seller_phone: str | None = Field(default=None, max_length=64)
    seller_email: str | None = Field(default=None, max_length=255)
    price: float | None = Field(default=None, ge=0)
    vin: str | None = None
    odometer_reading: int | None = Field(default=None, ge=0)
    seller_zip: str | None = Field(default=None, max_length=16)
    notes: str | None = None
    seller_disclosed_damage: bool = False
    tire: TireRecord | None = None

    @field_validator("vin")
    @classmethod
    def _check_vin(cls, value: str | None) -> str | None:
        vin = normalize_vin(value)
        if vin is not None and not VIN_PATTERN.match(vin):
            raise ValueError("VIN must be 17 characters, excluding I, O and Q")
        return vin


class CreateInspectionRequest(DeclaredAttributes):
    pass


class UpdateInspectionRequest(DeclaredAttributes):
    pass


class CreateInspectionResponse(BaseModel):
    inspection_id: str
    token: str
    token_expiry: str
    seller_link: str
    status: str


class RecognizedVinRequest(BaseModel):
    vin: str = Field(min_length=1, max_length=32)

    @field_validator("vin")
    @classmethod
    def _normalize(cls, value: str) -> str:
        vin = normalize_vin(value)
        if vin is None:
            raise ValueError("VIN must not be blank")
        return vin


class TokenCheckResponse(BaseModel):
    valid: bool
    inspection_id: str
    status: str
    token_expiry: str


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Metrics ─────────────────────────────────────────────────────────

class MetricsRegistry:
    """Counters and latency samples for one app instance."""

    def __init__(self, prefix: str = "inspection", max_samples: int = 10_000) -> None:
        self.prefix = prefix
        self.max_samples = max_samples
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] += amount

    def observe(self, name: str, seconds: float) -> None:
        samples = self.histograms[name]
        samples.append(seconds)
        if len(samples) > self.max_samples:
            del samples[: len(samples) - self.max_samples]
        self.counters[f"{name}_count"] += 1

    def summary(self) -> dict[str, Any]:
        latencies: dict[str, Any] = {}
        for name, vals in self.histograms.items():
            ordered = sorted(vals)
            n = len(ordered)
            latencies[name] = {
                "count": n,
                "p50_ms": round(ordered[n // 2] * 1000, 1) if n else 0,
                "p95_ms": round(ordered[min(int(n * 0.95), n - 1)] * 1000, 1) if n else 0,
                "p99_ms": round(ordered[min(int(n * 0.99), n - 1)] * 1000, 1) if n else 0,
            }
        return {"counters": dict(self.counters), "latency": latencies}

    def prometheus_text(self) -> str:
        """Render metrics in Prometheus exposition format."""
        lines: list[str] = []
        for k, v in sorted(self.counters.items()):
            safe = k.replace(".", "_").replace("-", "_")
            lines.append(f"# TYPE {self.prefix}_{safe} counter")
            lines.append(f"{self.prefix}_{safe} {v}")

        for name, vals in sorted(self.histograms.items()):
            if not vals:
                continue
            safe = name.replace(".", "_").replace("-", "_")
            sorted_vals = sorted(vals)
            n = len(sorted_vals)
            lines.append(f"# TYPE {self.prefix}_{safe}_seconds summary")
            for q in (0.5, 0.9, 0.95, 0.99):
                idx = min(int(n * q), n - 1)
                lines.append(f'{self.prefix}_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
            lines.append(f"{self.prefix}_{safe}_seconds_count {n}")
            lines.append(f"{self.prefix}_{safe}_seconds_sum {sum(sorted_vals):.6f}")

        return "\n".join(lines) + "\n"


def _inspection_view(inspection: Inspection, uploads: list[Any] | None = None) -> dict[str, Any]:
    view = inspection.to_dict()
    if uploads is not None:
        view["uploads"] = [u.to_dict() for u in uploads]
    return view


# ── App Factory ─────────────────────────────────────────────────────

def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = RedisCache(redis_url=settings.redis_url)
    store = InspectionStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    media = LocalMediaStore(root=settings.upload_dir)
    tokens = TokenAuthority(
        signing_key=settings.token_signing_key,
        ttl=timedelta(hours=settings.token_ttl_hours),
    )
    detector = RoboflowDetector(
        api_key=settings.roboflow_api_key,
        model=settings.roboflow_model,
        version=settings.roboflow_version,
        base_url=settings.roboflow_base_url,
        timeout=settings.detection_timeout_seconds,
    )
    history = VehicleHistoryService(
        client=VinAuditClient(
            api_key=settings.vinaudit_api_key,
            base_url=settings.vinaudit_base_url,
            timeout=settings.history_timeout_seconds,
        ),
        cache=cache,
        ttl_seconds=settings.history_cache_ttl_seconds,
    )
    geocoder = ZipGeocoder(
        cache=cache,
        base_url=settings.geocoder_base_url,
        timeout=settings.geocoder_timeout_seconds,
        ttl_seconds=settings.geocode_cache_ttl_seconds,
    )
    pipeline = UploadIntakePipeline(
        store=store,
        media=media,
        tokens=tokens,
        detector=detector,
        bus=kafka,
        quality_policy=settings.quality_policy(),
        public_base_url=settings.public_base_url,
        max_bytes=settings.max_upload_bytes,
    )
    scoring = FraudScoringService(
        store=store,
        history=history,
        geocoder=geocoder,
        bus=kafka,
        policy=settings.scoring_policy(),
    )
    metrics = MetricsRegistry()

    api_keys = [k.strip() for k in settings.api_keys.split(",") if k.strip()] if settings.api_keys else []
    auth = APIKeyAuth(allowed_keys=api_keys or None)
    limiter = RateLimiter(
        requests_per_minute=settings.rate_limit_rpm,
        max_clients=settings.rate_limit_max_clients,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        media.ensure_root()
        await cache.connect()
        await store.connect()
        await kafka.connect()
        if not tokens.keyed:
            logger.warning("TOKEN_SIGNING_KEY not set; token digests are unkeyed SHA-256")
        try:
            yield
        finally:
            await pipeline.drain()
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Remote Vehicle Inspection API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.cache = cache
    app.state.kafka = kafka
    app.state.pipeline = pipeline
    app.state.metrics = metrics
    app.state.limiter = limiter

    app.mount(PUBLIC_PREFIX, StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

    @app.exception_handler(InspectionError)
    async def inspection_error_handler(_: Request, exc: InspectionError) -> JSONResponse:
        metrics.increment(f"errors_{exc.code}")
        if exc.status_code >= 500:
            logger.warning("Request failed: %s (%s)", exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or new_correlation_id()
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Any) -> Response:
        return await limiter.middleware(request, call_next)

    def _origin(request: Request) -> str:
        return str(request.base_url).rstrip("/")

    async def _require_inspection(inspection_id: str) -> Inspection:
        inspection = await store.get_inspection(inspection_id)
        if inspection is None:
            raise NotFound("Inspection not found")
        return inspection

    # ── Inspections (admin) ─────────────────────────────────────────

    @app.post("/inspections", response_model=CreateInspectionResponse, status_code=status.HTTP_201_CREATED)
    async def create_inspection(
        payload: CreateInspectionRequest, request: Request, _: str | None = Depends(auth),
    ) -> CreateInspectionResponse:
        inspection_id = str(uuid.uuid4())
        issued = tokens.issue(inspection_id)
        inspection = Inspection(
            id=inspection_id,
            token_hash=issued.token_hash,
            token_expiry=issued.expiry,
            created_at=utcnow(),
            **payload.model_dump(),
        )
        await store.insert_inspection(inspection)
        metrics.increment("inspections_created")
        logger.info("Inspection created", extra={"extra_data": {"inspection_id": inspection_id}})

        base = settings.public_base_url or _origin(request)
        return CreateInspectionResponse(
            inspection_id=inspection_id,
            token=issued.token,
            token_expiry=issued.expiry.isoformat(),
            seller_link=f"{base.rstrip('/')}/inspect/{inspection_id}?t={issued.token}",
            status=inspection.status,
        )

    @app.get("/inspections")
    async def list_inspections(limit: int = 100, _: str | None = Depends(auth)) -> dict[str, Any]:
        rows = await store.list_inspections(limit=max(1, min(limit, 500)))
        return {"count": len(rows), "inspections": [_inspection_view(i) for i in rows]}

    @app.get("/inspections/{inspection_id}")
    async def get_inspection(inspection_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        inspection = await _require_inspection(inspection_id)
        return _inspection_view(inspection, await store.list_uploads(inspection_id))

    @app.put("/inspections/{inspection_id}")
    async def update_inspection(
        inspection_id: str, payload: UpdateInspectionRequest, _: str | None = Depends(auth),
    ) -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        updated = await store.update_declared(inspection_id, changes, utcnow())
        return _inspection_view(updated)

    @app.put("/inspections/{inspection_id}/tire")
    async def record_tire(
        inspection_id: str, payload: TireRecord, _: str | None = Depends(auth),
    ) -> dict[str, Any]:
        updated = await store.update_declared(inspection_id, {"tire": payload.model_dump()}, utcnow())
        return _inspection_view(updated)

    @app.post("/inspections/{inspection_id}/complete")
    async def complete_inspection(inspection_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        updated = await store.complete(inspection_id, utcnow())
        metrics.increment("inspections_completed")
        logger.info("Inspection completed", extra={"extra_data": {"inspection_id": inspection_id}})
        return _inspection_view(updated)

    # ── Seller intake ───────────────────────────────────────────────

    @app.get("/inspections/{inspection_id}/validate", response_model=TokenCheckResponse)
    async def validate_token(inspection_id: str, request: Request) -> TokenCheckResponse:
        inspection = await store.get_inspection(inspection_id)
        tokens.validate(inspection, presented_token(request))
        return TokenCheckResponse(
            valid=True,
            inspection_id=inspection.id,
            status=inspection.status,
            token_expiry=inspection.token_expiry.isoformat(),
        )

    @app.post("/inspections/{inspection_id}/uploads", status_code=status.HTTP_201_CREATED)
    async def upload_photo(
        inspection_id: str,
        request: Request,
        file: UploadFile | None = File(default=None),
        category: str | None = Form(default=None),
        lat: str | None = Form(default=None),
        lng: str | None = Form(default=None),
        accuracy: str | None = Form(default=None),
    ) -> dict[str, Any]:
        t0 = time.monotonic()
        incoming = None
        if file is not None:
            incoming = IncomingFile(filename=file.filename, content_type=file.content_type, data=await file.read())
        upload = await pipeline.ingest(
            inspection_id,
            presented_token(request),
            incoming,
            DeclaredMetadata.from_form(category=category, lat=lat, lng=lng, accuracy=accuracy),
            origin=_origin(request),
        )
        metrics.observe("upload", time.monotonic() - t0)
        metrics.increment("uploads_accepted")
        return upload.to_dict()

    # ── Review (admin) ──────────────────────────────────────────────

    @app.get("/uploads")
    async def review_queue(limit: int = 100, _: str | None = Depends(auth)) -> dict[str, Any]:
        rows = await store.list_recent_uploads(limit=max(1, min(limit, 500)))
        return {"count": len(rows), "uploads": [u.to_dict() for u in rows]}

    @app.post("/inspections/{inspection_id}/uploads/{upload_id}/detect")
    async def detect_damage(
        inspection_id: str, upload_id: str, request: Request, _: str | None = Depends(auth),
    ) -> dict[str, Any]:
        t0 = time.monotonic()
        upload = await pipeline.run_detection(inspection_id, upload_id, origin=_origin(request))
        metrics.observe("detection", time.monotonic() - t0)
        return upload.to_dict()

    @app.put("/inspections/{inspection_id}/uploads/{upload_id}/recognized-vin")
    async def set_recognized_vin(
        inspection_id: str, upload_id: str, payload: RecognizedVinRequest, _: str | None = Depends(auth),
    ) -> dict[str, Any]:
        upload = await store.get_upload(upload_id)
        if upload is None or upload.inspection_id != inspection_id:
            raise NotFound("Upload not found")
        updated = await store.attach_recognized_vin(upload_id, payload.vin)
        return updated.to_dict()

    @app.get("/inspections/{inspection_id}/fraud-score")
    async def fraud_score(inspection_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        t0 = time.monotonic()
        assessment = await scoring.score(inspection_id)
        metrics.observe("scoring", time.monotonic() - t0)
        metrics.increment("fraud_assessments")
        if assessment.auto_flag:
            metrics.increment("auto_flags")
        return assessment.to_dict()

    @app.get("/inspections/{inspection_id}/damage-analysis")
    async def damage_analysis(inspection_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        await _require_inspection(inspection_id)
        report = analyze_damage(await store.list_uploads(inspection_id))
        return {"inspection_id": inspection_id, **report}

    # ── Vehicle history (admin) ─────────────────────────────────────

    def _checked_vin(vin: str) -> str:
        normalized = normalize_vin(vin)
        if not is_valid_vin(normalized):
            raise HTTPException(status_code=400, detail="Invalid VIN format")
        return normalized

    @app.get("/vin/{vin}/history")
    async def vehicle_history(vin: str, refresh: bool = False, _: str | None = Depends(auth)) -> dict[str, Any]:
        record = await history.get(_checked_vin(vin), refresh=refresh)
        return record.to_dict()

    @app.delete("/vin/{vin}/history", status_code=status.HTTP_204_NO_CONTENT)
    async def invalidate_history(vin: str, _: str | None = Depends(auth)) -> Response:
        await history.invalidate(_checked_vin(vin))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        return metrics.summary()

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=metrics.prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
