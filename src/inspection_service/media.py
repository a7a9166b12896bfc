from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from inspection.errors import StorageError

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/uploads"


@dataclass(frozen=True)
class StoredMedia:
    filename: str
    path: str  # public locator, e.g. /uploads/<name>
    size: int


class LocalMediaStore:
    """Photos on the local filesystem, one file per upload.

    Files are named ``<uuid4><ext>`` so a client-chosen name never reaches the
    disk. Writes go through a temporary file and a rename.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _extension(original_filename: str | None) -> str:
        ext = Path(original_filename or "").suffix.lower()
        # Keep only short alphanumeric suffixes.
        if len(ext) > 10 or not ext[1:].isalnum():
            return ""
        return ext

    def _write(self, target: Path, data: bytes) -> None:
        self.ensure_root()
        tmp = target.with_name(f".{target.name}.part")
        try:
            with open(tmp, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    async def save(self, data: bytes, original_filename: str | None) -> StoredMedia:
        filename = f"{uuid.uuid4()}{self._extension(original_filename)}"
        target = self.root / filename
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            logger.error("Failed to persist upload %s: %s", filename, exc)
            raise StorageError("Could not store uploaded file") from exc
        return StoredMedia(filename=filename, path=f"{PUBLIC_PREFIX}/{filename}", size=len(data))

    def public_url(self, locator: str, base_url: str) -> str:
        return f"{base_url.rstrip('/')}{locator}"
