from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from backend.application import CacheService
from backend.core.errors import StoreIOError
from backend.infrastructure import InMemoryCacheStore, JsonFileCacheStore
from tests.fakes import FixedClock, make_task


def test_missing_entries_read_as_none(tmp_path):
    store = JsonFileCacheStore(tmp_path / "cache")
    assert asyncio.run(store.read_metadata()) is None
    assert asyncio.run(store.read_month("2025-01")) is None


def test_month_and_metadata_files_layout(tmp_path):
    root = tmp_path / "cache"
    store = JsonFileCacheStore(root)

    asyncio.run(store.write_month("2025-01", {"month": "2025-01", "tasks": []}))
    asyncio.run(store.write_metadata({"version": "1.0.0"}))

    assert sorted(path.name for path in root.iterdir()) == ["2025-01.json", "meta.json"]
    assert json.loads((root / "2025-01.json").read_text(encoding="utf-8"))["month"] == "2025-01"
    assert asyncio.run(store.read_metadata()) == {"version": "1.0.0"}


def test_corrupt_file_is_treated_as_missing(tmp_path, caplog):
    root = tmp_path / "cache"
    root.mkdir()
    (root / "meta.json").write_text("{not json", encoding="utf-8")
    store = JsonFileCacheStore(root)

    with caplog.at_level(logging.WARNING):
        assert asyncio.run(store.read_metadata()) is None
    assert "Corrupt cache file" in caplog.text


def test_write_failure_raises_store_error(tmp_path):
    blocker = tmp_path / "cache"
    blocker.write_text("not a directory", encoding="utf-8")
    store = JsonFileCacheStore(blocker)

    with pytest.raises(StoreIOError):
        asyncio.run(store.write_metadata({"version": "1.0.0"}))


def test_unserialisable_payload_leaves_no_temp_file(tmp_path):
    root = tmp_path / "cache"
    store = JsonFileCacheStore(root)
    asyncio.run(store.write_metadata({"version": "1.0.0"}))

    with pytest.raises(StoreIOError):
        asyncio.run(store.write_metadata({"version": object()}))

    assert [path.name for path in root.iterdir()] == ["meta.json"]
    assert asyncio.run(store.read_metadata()) == {"version": "1.0.0"}


def test_invalid_month_key_is_rejected(tmp_path):
    store = JsonFileCacheStore(tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(store.read_month("../meta"))
    with pytest.raises(ValueError):
        asyncio.run(InMemoryCacheStore().write_month("2025-13", {}))


def test_service_round_trips_through_files(tmp_path):
    service = CacheService(JsonFileCacheStore(tmp_path / "cache"), clock=FixedClock())
    task = make_task("A", "2025-01-02T00:00:00Z", custom_field="kept")

    asyncio.run(service.cache_current_month([task]))

    stored = json.loads((tmp_path / "cache" / "2025-01.json").read_text(encoding="utf-8"))
    assert stored["metadata"]["taskCount"] == 1
    assert stored["metadata"]["isFrozen"] is False
    assert stored["tasks"][0]["custom_field"] == "kept"
    meta = json.loads((tmp_path / "cache" / "meta.json").read_text(encoding="utf-8"))
    assert meta["currentMonth"] == "2025-01"
    assert meta["months"]["2025-01"]["status"] == "current"
