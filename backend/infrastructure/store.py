"""Infrastructure layer for cache persistence."""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

from backend.core.errors import StoreIOError
from backend.core.months import is_month_key

logger = logging.getLogger(__name__)

METADATA_KEY = "meta"


class CacheStore(Protocol):
    """Persistence contract for month partitions and the metadata singleton.

    Reads return ``None`` for anything missing; writes raise
    :class:`StoreIOError` when the value cannot be persisted.
    """

    async def read_metadata(self) -> dict[str, Any] | None: ...

    async def write_metadata(self, data: dict[str, Any]) -> None: ...

    async def read_month(self, month: str) -> dict[str, Any] | None: ...

    async def write_month(self, month: str, data: dict[str, Any]) -> None: ...


def _check_month(month: str) -> str:
    if not is_month_key(month):
        raise ValueError(f"invalid month key: {month!r}")
    return month


class InMemoryCacheStore:
    """Dictionary-backed store for fast iteration and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}
        self.writes: list[str] = []

    async def read_metadata(self) -> dict[str, Any] | None:
        return self._read(METADATA_KEY)

    async def write_metadata(self, data: dict[str, Any]) -> None:
        self._write(METADATA_KEY, data)

    async def read_month(self, month: str) -> dict[str, Any] | None:
        return self._read(_check_month(month))

    async def write_month(self, month: str, data: dict[str, Any]) -> None:
        self._write(_check_month(month), data)

    def _read(self, key: str) -> dict[str, Any] | None:
        value = self._entries.get(key)
        return copy.deepcopy(value) if value is not None else None

    def _write(self, key: str, data: dict[str, Any]) -> None:
        # Round-trip through JSON so the in-memory store rejects what the file store would.
        try:
            self._entries[key] = json.loads(json.dumps(data))
        except (TypeError, ValueError) as exc:
            raise StoreIOError(f"cannot serialise cache entry {key}: {exc}") from exc
        self.writes.append(key)


class JsonFileCacheStore:
    """One JSON file per month plus ``meta.json`` inside ``root``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        return self._root / f"{key}.json"

    # ------------------------------------------------------------------
    # blocking helpers, executed in a worker thread
    # ------------------------------------------------------------------
    def _read_file(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Unreadable cache file %s: %s", path, exc)
            return None
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.warning("Corrupt cache file %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Unexpected cache payload in %s", path)
            return None
        return data

    def _write_file(self, key: str, data: dict[str, Any]) -> None:
        path = self._path(key)
        tmp_path: str | None = None
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self._root,
                prefix=f".{key}-",
                suffix=".tmp",
                delete=False,
            ) as fp:
                tmp_path = fp.name
                json.dump(data, fp, ensure_ascii=False, indent=2)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as exc:
            raise StoreIOError(f"failed to write cache file {path}: {exc}") from exc
        finally:
            if tmp_path is not None:
                with suppress(OSError):
                    os.unlink(tmp_path)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def read_metadata(self) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read_file, METADATA_KEY)

    async def write_metadata(self, data: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_file, METADATA_KEY, data)

    async def read_month(self, month: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read_file, _check_month(month))

    async def write_month(self, month: str, data: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_file, _check_month(month), data)


__all__ = ["CacheStore", "InMemoryCacheStore", "JsonFileCacheStore", "METADATA_KEY"]
