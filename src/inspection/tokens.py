from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from inspection.config import TOKEN_TTL
from inspection.data_models import Inspection, utcnow
from inspection.errors import InvalidToken, NotFound, TokenExpired


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_hash: str
    expiry: datetime


class TokenAuthority:
    """Issue and verify single-inspection bearer tokens.

    Only the digest of a token is ever kept. With a signing key the digest is
    HMAC-SHA256; without one it falls back to plain SHA-256. The inspection id
    is part of the digest input, so a token cannot be replayed against a
    different inspection.
    """

    def __init__(
        self,
        signing_key: str = "",
        ttl: timedelta = TOKEN_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._key = signing_key.encode() if signing_key else b""
        self.ttl = ttl
        self.clock = clock

    @property
    def keyed(self) -> bool:
        return bool(self._key)

    def digest(self, inspection_id: str, token: str) -> str:
        message = f"{inspection_id}:{token}".encode()
        if self._key:
            return hmac.new(self._key, message, hashlib.sha256).hexdigest()
        return hashlib.sha256(message).hexdigest()

    def issue(self, inspection_id: str) -> IssuedToken:
        token = secrets.token_urlsafe(32)
        return IssuedToken(
            token=token,
            token_hash=self.digest(inspection_id, token),
            expiry=self.clock() + self.ttl,
        )

    def validate(self, inspection: Inspection | None, presented: str | None) -> None:
        """Raise unless ``presented`` is the live token for ``inspection``.

        Expiry is checked first so an expired window always reports
        ``TokenExpired``. Validation never consumes the token.
        """
        if inspection is None:
            raise NotFound("Inspection not found")
        if self.clock() > inspection.token_expiry:
            raise TokenExpired("Token expired")
        if not presented:
            raise InvalidToken("Missing token")
        expected = self.digest(inspection.id, presented)
        if not hmac.compare_digest(expected, inspection.token_hash):
            raise InvalidToken("Invalid token")
