"""Filesystem adapters (NAS mounts, local testing, staging copies)."""

from __future__ import annotations

import asyncio
import bisect
import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

from bucket_migrate.errors import StoreError
from bucket_migrate.models import CandidateItem
from bucket_migrate.stores.base import Page

logger = structlog.get_logger(__name__)

METADATA_SUFFIX = ".meta.json"


class LocalDirectorySource:
    """Lists a directory tree in sorted key order; the cursor is the last key returned."""

    name = "local"

    def __init__(self, root: Path, *, page_size: int = 1000, prefix: str = "") -> None:
        self.root = Path(root)
        self.page_size = page_size
        self.prefix = prefix
        self._keys: list[str] | None = None
        self._logger = logger.bind(store=self.name, root=str(self.root))

    async def __aenter__(self) -> LocalDirectorySource:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._keys = None

    def _scan(self) -> list[str]:
        if not self.root.is_dir():
            raise StoreError(f"Source directory does not exist: {self.root}")
        keys: list[str] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(METADATA_SUFFIX):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(self.prefix):
                keys.append(key)
        keys.sort()
        self._logger.debug("Scanned source directory", objects=len(keys))
        return keys

    async def next_page(self, cursor: str | None) -> Page:
        if self._keys is None:
            self._keys = await asyncio.to_thread(self._scan)
        keys = self._keys
        start = bisect.bisect_right(keys, cursor) if cursor else 0
        chunk = keys[start : start + self.page_size]
        items = []
        for key in chunk:
            try:
                size = (self.root / key).stat().st_size
            except OSError:
                size = None
            items.append(CandidateItem(identifier=key, size_hint=size))
        more = start + self.page_size < len(keys)
        return Page(items=items, next_cursor=chunk[-1] if more and chunk else None)

    async def fetch(self, identifier: str) -> bytes:
        return await asyncio.to_thread((self.root / identifier).read_bytes)


class LocalDirectoryDestination:
    """Writes objects below a directory; metadata goes to a ``.meta.json`` sidecar."""

    name = "local"

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._logger = logger.bind(store=self.name, root=str(self.root))

    async def __aenter__(self) -> LocalDirectoryDestination:
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        return None

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise StoreError(f"Key escapes destination directory: {key!r}")
        return path

    async def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def read_metadata(self, key: str) -> dict[str, Any]:
        path = self._path_for(key)
        sidecar = path.with_name(path.name + METADATA_SUFFIX)
        with open(sidecar) as f:
            return json.load(f)

    def _head(self, key: str) -> dict[str, str] | None:
        if not self._path_for(key).is_file():
            return None
        try:
            return dict(self.read_metadata(key).get("metadata") or {})
        except FileNotFoundError:
            # Placed there by something other than this tool.
            return {}

    async def head(self, key: str) -> dict[str, str] | None:
        return await asyncio.to_thread(self._head, key)

    def _write(
        self, key: str, payload: bytes, content_type: str, metadata: dict[str, str]
    ) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        sidecar = path.with_name(path.name + METADATA_SUFFIX)
        _atomic_write(
            sidecar,
            json.dumps({"content_type": content_type, "metadata": metadata}, indent=2).encode(),
        )
        _atomic_write(path, payload)

    async def put(
        self,
        key: str,
        payload: bytes,
        content_type: str,
        metadata: dict[str, str],
    ) -> None:
        await asyncio.to_thread(self._write, key, payload, content_type, metadata)


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise

