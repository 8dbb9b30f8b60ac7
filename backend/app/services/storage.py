"""
Local file storage for uploaded import files.

Contract: store bytes, get a key back; resolve a key to a path; delete by
key. Keys are relative POSIX paths under the storage root and are
checked so a crafted key can never escape it.

Uploads are copied in fixed-size chunks, so a 100 MB CSV never sits in
memory, and the size cap is enforced while copying.
"""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path

from fastapi import UploadFile

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class UploadTooLargeError(Exception):
    """Raised when an upload exceeds the configured size cap."""


class LocalFileStorage:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def path(self, key: str) -> Path:
        candidate = (self._root / key).resolve()
        if not candidate.is_relative_to(self._root):
            raise ValueError(f"Storage key escapes the storage root: {key!r}")
        return candidate

    def exists(self, key: str) -> bool:
        return self.path(key).is_file()

    async def save_upload(
        self,
        upload: UploadFile,
        *,
        folder: str,
        max_bytes: int,
        suffix: str = "",
    ) -> str:
        key = f"{folder}/{uuid.uuid4().hex}{suffix}"
        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)

        written = 0
        try:
            with target.open("wb") as handle:
                while chunk := await upload.read(CHUNK_SIZE):
                    written += len(chunk)
                    if written > max_bytes:
                        raise UploadTooLargeError(f"Upload exceeds {max_bytes} bytes")
                    handle.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        logger.info("Stored upload %s (%d bytes)", key, written)
        return key

    def delete(self, key: str) -> bool:
        target = self.path(key)
        if not target.exists():
            return False
        target.unlink()
        return True

    def purge_older_than(self, max_age_seconds: float) -> int:
        """Delete stored files last modified more than max_age_seconds ago."""
        cutoff = time.time() - max_age_seconds
        removed = 0
        if not self._root.exists():
            return removed
        for file in self._root.rglob("*"):
            if file.is_file() and file.stat().st_mtime < cutoff:
                file.unlink(missing_ok=True)
                removed += 1
        return removed
