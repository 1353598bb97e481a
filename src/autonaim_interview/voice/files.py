"""Opaque storage for binary message content (voice notes)."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)

_SAFE_SUFFIX = re.compile(r"^\.[A-Za-z0-9]{1,8}$")


class LocalFileStore:
    """Stores blobs under a directory and hands out opaque file ids."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, file_id: str) -> Path:
        if "/" in file_id or "\\" in file_id or file_id.startswith("."):
            raise ValueError(f"Invalid file id: {file_id!r}")
        return self._root / file_id

    async def save(self, data: bytes, suffix: str = ".ogg") -> str:
        """Persist bytes and return the new file id."""
        suffix = suffix if _SAFE_SUFFIX.match(suffix) else ".bin"
        file_id = f"{uuid4().hex}{suffix}"
        path = self._path(file_id)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug(f"Stored {len(data)} bytes as {file_id}")
        return file_id

    async def read(self, file_id: str) -> bytes:
        """
        Load a stored blob.

        Raises:
            FileNotFoundError: Unknown file id.
        """
        return await asyncio.to_thread(self._path(file_id).read_bytes)

    async def exists(self, file_id: str) -> bool:
        return await asyncio.to_thread(self._path(file_id).exists)

    async def delete(self, file_id: str) -> None:
        """Remove a blob; unknown ids are ignored."""
        await asyncio.to_thread(self._path(file_id).unlink, missing_ok=True)
        logger.debug(f"Deleted {file_id}")
