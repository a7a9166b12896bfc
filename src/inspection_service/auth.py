from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections import OrderedDict
from typing import Any

from fastapi import HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class APIKeyAuth:
    """Guard admin endpoints with a set of allowed API keys.

    Keys are held as SHA-256 hashes. Disabled when no keys are configured
    (development mode). Seller endpoints do not use this; they present the
    per-inspection bearer token instead.
    """

    def __init__(self, allowed_keys: list[str] | None = None) -> None:
        self._enabled = bool(allowed_keys)
        self._hashes: set[str] = set()
        for key in (allowed_keys or []):
            if key.strip():
                self._hashes.add(self._hash(key.strip()))

    @staticmethod
    def _hash(key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()

    def validate(self, api_key: str | None) -> bool:
        if not self._enabled:
            return True
        if not api_key:
            return False
        presented = self._hash(api_key)
        return any(hmac.compare_digest(presented, allowed) for allowed in self._hashes)

    async def __call__(self, api_key: str | None = Security(_api_key_header)) -> str | None:
        if not self._enabled:
            return None
        if not self.validate(api_key):
            logger.warning("Rejected admin request with invalid API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API key",
            )
        return api_key


def presented_token(request: Request) -> str | None:
    """Seller token from ``?t=`` or the ``X-Token`` header."""
    return request.query_params.get("t") or request.headers.get("X-Token") or None


class RateLimiter:
    """Sliding-window rate limiter per client IP.

    State is owned by the instance. Windows that empty out are dropped, and at
    most ``max_clients`` windows are tracked; the least recently seen client is
    evicted first.
    """

    def __init__(self, requests_per_minute: int = 60, max_clients: int = 10_000) -> None:
        self.rpm = requests_per_minute
        self.max_clients = max(1, max_clients)
        self._windows: OrderedDict[str, list[float]] = OrderedDict()
        self._enabled = requests_per_minute > 0

    @property
    def tracked_clients(self) -> int:
        return len(self._windows)

    def _cleanup(self, key: str, now: float) -> list[float]:
        cutoff = now - 60.0
        window = [t for t in self._windows.get(key, []) if t > cutoff]
        if window:
            self._windows[key] = window
            self._windows.move_to_end(key)
        else:
            self._windows.pop(key, None)
        return window

    def _evict(self) -> None:
        while len(self._windows) > self.max_clients:
            self._windows.popitem(last=False)

    def check(self, client_ip: str, now: float | None = None) -> bool:
        if not self._enabled:
            return True
        now = time.monotonic() if now is None else now
        window = self._cleanup(client_ip, now)
        if len(window) >= self.rpm:
            return False
        window.append(now)
        self._windows[client_ip] = window
        self._windows.move_to_end(client_ip)
        self._evict()
        return True

    async def middleware(self, request: Request, call_next: Any) -> Any:
        if not self._enabled:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if not self.check(client_ip):
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"error": "rate_limited", "detail": "Rate limit exceeded"},
            )
        return await call_next(request)
