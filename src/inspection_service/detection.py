from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

import httpx

from inspection.data_models import Detection, Prediction, utcnow
from inspection.errors import NotConfigured, ProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)


class RoboflowDetector:
    """Async client for Roboflow hosted object detection.

    Endpoint: POST {base_url}/{model}/{version}?api_key=...&image=<url>
    Callers check ``enabled`` before invoking; an unconfigured detector is not
    an error the intake path ever sees.
    """

    provider = "roboflow"

    def __init__(
        self,
        api_key: str,
        model: str,
        version: str = "1",
        base_url: str = "https://detect.roboflow.com",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.version = version
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.model)

    async def detect(self, image_url: str) -> Detection:
        if not self.enabled:
            raise NotConfigured("Damage detection not configured")

        url = f"{self.base_url}/{self.model}/{self.version}"
        params = {"api_key": self.api_key, "image": image_url, "format": "json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, params=params)
                resp.raise_for_status()
            payload = resp.json()
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise ProviderUnavailable(f"detection provider unreachable: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"detection provider returned {exc.response.status_code}") from exc
        except ValueError as exc:
            raise ProviderError("detection provider returned invalid JSON") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("predictions"), list):
            raise ProviderError("detection response has no predictions list")

        predictions = tuple(
            p for p in (_normalize_prediction(raw) for raw in payload["predictions"]) if p is not None
        )
        return Detection(
            predictions=predictions,
            detected_at=self.clock(),
            provider=self.provider,
            model=f"{self.model}/{self.version}",
        )


def _normalize_prediction(raw: Any) -> Prediction | None:
    if not isinstance(raw, dict):
        return None
    try:
        confidence = float(raw.get("confidence", 0.0))
        return Prediction(
            label=str(raw.get("class") or raw.get("label") or "unknown"),
            confidence=min(1.0, max(0.0, confidence)),
            x=float(raw.get("x", 0.0)),
            y=float(raw.get("y", 0.0)),
            width=float(raw.get("width", 0.0)),
            height=float(raw.get("height", 0.0)),
        )
    except (TypeError, ValueError):
        logger.warning("Dropping malformed prediction: %r", raw)
        return None
