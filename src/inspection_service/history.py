from __future__ import annotations

import logging
from typing import Any

import httpx

from inspection.data_models import (
    AccidentHistory,
    OdometerHistory,
    OdometerReading,
    OwnershipHistory,
    RecallHistory,
    TitleHistory,
    VehicleDescriptor,
    VehicleHistoryRecord,
)
from inspection.errors import NotConfigured, ProviderError
from inspection_service.storage import RedisCache

logger = logging.getLogger(__name__)


class VinAuditClient:
    """Async client for the VinAudit title/ownership/odometer lookup.

    The VIN must already be a well-formed 17-character VIN; format checks are
    the caller's job.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://specifications.vinaudit.com/v3",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def lookup(self, vin: str) -> VehicleHistoryRecord:
        if not self.enabled:
            raise NotConfigured("Vehicle history provider not configured")

        try:
            url = f"{self.base_url}/specifications"
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, params={"key": self.api_key, "vin": vin, "format": "json"})
                resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"history provider returned {exc.response.status_code}") from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise ProviderError(f"history provider unreachable: {exc}") from exc
        except ValueError as exc:
            raise ProviderError("history provider returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise ProviderError("history response is not an object")
        return normalize_history(vin, payload)


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _int(value: Any) -> int | None:
    try:
        return None if value is None or value == "" else int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _reading(raw: Any) -> OdometerReading:
    if isinstance(raw, dict):
        mileage = raw.get("mileage", raw.get("reading", raw.get("odometer")))
        return OdometerReading(mileage=_int(mileage), date=raw.get("date"))
    return OdometerReading(mileage=_int(raw))


def normalize_history(vin: str, data: dict[str, Any]) -> VehicleHistoryRecord:
    """Map a provider payload onto the normalized record.

    Every section is present with empty/zero/false defaults, so a section the
    provider omitted reads the same as an explicitly clean one.
    """
    title = _dict(data.get("title"))
    accident = _dict(data.get("accident"))
    ownership = _dict(data.get("ownership"))
    odometer = _dict(data.get("odometer"))
    recall = _dict(data.get("recall"))
    return VehicleHistoryRecord(
        vin=vin,
        success=bool(data.get("success")),
        vehicle=VehicleDescriptor(
            year=_int(data.get("year")),
            make=data.get("make") or None,
            model=data.get("model") or None,
            trim=data.get("trim") or None,
        ),
        title=TitleHistory(
            brands=tuple(str(b) for b in _list(title.get("brands"))),
            salvage=bool(title.get("salvage")),
            rebuilt=bool(title.get("rebuilt")),
            junk=bool(title.get("junk")),
        ),
        accidents=AccidentHistory(
            count=_int(accident.get("count")) or 0,
            records=tuple(_list(accident.get("records"))),
        ),
        ownership=OwnershipHistory(
            count=_int(ownership.get("count")) or 0,
            last_date=ownership.get("lastDate"),
            type=ownership.get("type"),
        ),
        odometer=OdometerHistory(
            readings=tuple(_reading(r) for r in _list(odometer.get("readings"))),
            rollback=bool(odometer.get("rollback")),
        ),
        recalls=RecallHistory(
            count=_int(recall.get("count")) or 0,
            records=tuple(_list(recall.get("records"))),
        ),
        market_value=data.get("marketValue"),
        warranty=data.get("warranty"),
    )


class VehicleHistoryService:
    """History lookups cached per VIN until the TTL lapses or ``invalidate``."""

    def __init__(self, client: VinAuditClient, cache: RedisCache, ttl_seconds: int) -> None:
        self.client = client
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(vin: str) -> str:
        return f"vin_history:{vin}"

    async def get(self, vin: str, refresh: bool = False) -> VehicleHistoryRecord:
        if not refresh:
            cached = await self.cache.get_json(self._key(vin))
            if cached is not None:
                return VehicleHistoryRecord.from_dict(cached)

        record = await self.client.lookup(vin)
        await self.cache.set_json(self._key(vin), record.to_dict(), ttl_seconds=self.ttl_seconds)
        logger.info("Fetched vehicle history for %s", vin)
        return record

    async def cached(self, vin: str) -> VehicleHistoryRecord | None:
        cached = await self.cache.get_json(self._key(vin))
        return None if cached is None else VehicleHistoryRecord.from_dict(cached)

    async def invalidate(self, vin: str) -> None:
        await self.cache.delete(self._key(vin))
