from __future__ import annotations

import logging
import re

import httpx

from inspection.data_models import GeoPoint
from inspection_service.storage import RedisCache

logger = logging.getLogger(__name__)

_ZIP_PATTERN = re.compile(r"^\d{5}$")


class ZipGeocoder:
    """Resolve a US ZIP code to a coordinate (Zippopotam-style API).

    Lookups are best effort: any failure returns ``None`` and is logged, so the
    GPS signal simply cannot trigger. Results are cached per ZIP.
    """

    def __init__(
        self,
        cache: RedisCache,
        base_url: str = "https://api.zippopotam.us/us",
        timeout: float = 3.0,
        ttl_seconds: int = 7_776_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def locate(self, zip_code: str | None) -> GeoPoint | None:
        if not self.enabled or not zip_code:
            return None
        zip5 = zip_code.strip()[:5]
        if not _ZIP_PATTERN.match(zip5):
            return None

        cache_key = f"zip_geo:{zip5}"
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return GeoPoint.from_dict(cached)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/{zip5}")
                resp.raise_for_status()
            place = (resp.json().get("places") or [{}])[0]
            point = GeoPoint(lat=float(place["latitude"]), lng=float(place["longitude"]))
        except Exception as exc:
            logger.warning("ZIP geocoding failed for %s: %s", zip5, exc)
            return None

        await self.cache.set_json(cache_key, point.to_dict(), ttl_seconds=self.ttl_seconds)
        return point
