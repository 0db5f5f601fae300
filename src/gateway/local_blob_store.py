# src/gateway/local_blob_store.py — v1
"""Local filesystem blob store (default backend)."""

from __future__ import annotations

import os
import re
from pathlib import Path

from scrapegate.core.errors import BlobStoreError
from scrapegate.gateway.base_blob_store import BaseBlobStore

_UNSAFE = re.compile(r"[^A-Za-z0-9._/-]")


class LocalBlobStore(BaseBlobStore):
    """Write blobs as files under a root directory.

    References are root-relative paths. Writes go to a temp file first and
    are renamed into place, so a crash never leaves a torn object.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, ref: str) -> Path:
        safe = _UNSAFE.sub("_", ref).lstrip("/")
        path = (self._root / safe).resolve()
        if self._root.resolve() not in path.parents:
            raise BlobStoreError(f"Blob reference escapes store root: {ref!r}")
        return path

    async def put_object(self, key: str, text: str) -> str:
        path = self._resolve(key)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob {key!r}: {e}") from e
        return str(path.relative_to(self._root.resolve()))

    async def get_object(self, ref: str) -> str:
        try:
            return self._resolve(ref).read_text(encoding="utf-8")
        except OSError as e:
            raise BlobStoreError(f"Failed to read blob {ref!r}: {e}") from e

    async def delete_object(self, ref: str) -> None:
        path = self._resolve(ref)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete blob {ref!r}: {e}") from e
