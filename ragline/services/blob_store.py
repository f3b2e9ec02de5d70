"""Raw document storage — blob store keyed by path, plus direct URL fetches."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

import httpx

from ragline.core.config import get_settings
from ragline.core.errors import StorageError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def put(self, key: str, data: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...


class FileSystemBlobStore:
    """Stores blobs as files under a root directory.

    Keys are relative paths such as ``tenant/doc_123/original.pdf``.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise StorageError(f"Invalid blob key: {key}")
        return path

    async def get(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return await asyncio.to_thread(path.read_bytes)

    async def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        await asyncio.to_thread(_write_file, path, data)

    async def delete(self, key: str) -> None:
        """Remove a blob; missing keys are ignored."""
        path = self._path(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def build_blob_store() -> FileSystemBlobStore:
    return FileSystemBlobStore(get_settings().blob_dir)


async def fetch_url(url: str, timeout: float = 30) -> bytes:
    """Download raw bytes for a document referenced by URL."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(url, headers={"User-Agent": "RAGLine/1.0"})
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as exc:
        logger.warning("Fetching %s failed: %s", url, exc)
        raise StorageError(f"Failed to fetch document from {url}: {exc}") from exc
