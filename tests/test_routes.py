from __future__ import annotations

import sys
import time
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
from fastapi.testclient import TestClient

from backend.application import CacheService, configure_cache_service, configure_task_source, reset_cache_state
from backend.core.errors import SourceFetchError
from backend.infrastructure import JsonFileCacheStore
from backend.workers.build import reset_build_worker
from tests.fakes import FakeTaskSource, FixedClock, make_task

TASKS = [
    make_task("A", "2025-01-02T00:00:00Z", closed="2025-01-12T00:00:00Z", status={"status": "concluído"}),
    make_task("B", "2024-12-20T00:00:00Z", status={"status": "em desenvolvimento"}),
]


@pytest.fixture(autouse=True)
def reset_state():
    reset_cache_state()
    reset_build_worker()
    yield
    reset_cache_state()
    reset_build_worker()


@pytest.fixture()
def source() -> FakeTaskSource:
    return FakeTaskSource(TASKS)


@pytest.fixture()
def service(tmp_path) -> CacheService:
    return CacheService(JsonFileCacheStore(tmp_path / "cache"), list_id="list-1", clock=FixedClock())


@pytest.fixture()
def client(tmp_path, monkeypatch, service, source):
    monkeypatch.setenv("CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("CACHE_BUILD_PAUSE_SECONDS", "0")
    configure_cache_service(service)
    configure_task_source(source)

    from backend.app import create_app

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


def _wait_for_build(client: TestClient, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        data = client.get("/api/cache/build").json()["data"]
        if not data["isRunning"] or time.monotonic() > deadline:
            return data
        time.sleep(0.02)


def test_root_landing_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["health"] == "/api/cache/status"


def test_status_before_initialization(client):
    response = client.get("/api/cache/status")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["isInitialized"] is False
    assert data["stats"]["totalMonths"] == 13


def test_build_then_status(client, source):
    response = client.post("/api/cache/build")
    assert response.status_code == 200
    assert response.json()["success"] is True

    build = _wait_for_build(client)
    assert build["isRunning"] is False
    assert build["progress"]["completedMonths"] == 12
    assert build["progress"]["errors"] == []
    assert source.calls == 1

    status = client.get("/api/cache/status").json()["data"]
    assert status["isInitialized"] is True
    assert status["stats"]["cachedMonths"] == 13
    assert status["months"][0]["month"] == "2025-01"
    assert status["months"][0]["status"] == "current"


def test_refresh_returns_delta(client, source):
    first = client.post("/api/cache/refresh").json()["data"]
    assert first["previousCount"] == 0
    assert first["newCount"] == 2
    assert first["addedTasks"] == 2

    source.tasks.append(make_task("C", "2025-01-20T00:00:00Z"))
    second = client.post("/api/cache/refresh").json()["data"]
    assert second["previousCount"] == 2
    assert second["newCount"] == 3
    assert second["addedTasks"] == 1


def test_refresh_surfaces_source_errors(client, source):
    source.error = SourceFetchError("failed to fetch tasks: 401 - Token invalid")
    response = client.post("/api/cache/refresh")
    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "failed to fetch tasks: 401 - Token invalid"}


def test_tasks_requires_initialized_cache(client):
    response = client.get("/api/cache/tasks")
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_tasks_filters_cached_tasks(client):
    client.post("/api/cache/refresh")

    response = client.get(
        "/api/cache/tasks",
        params={
            "startDate": "2025-01-01T00:00:00Z",
            "endDate": "2025-01-31T23:59:59Z",
            "dateCriteria": "closed",
        },
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert [task["id"] for task in data["tasks"]] == ["A"]
    assert data["tasks"][0]["category"] == "closed"
    assert data["totalCount"] == 1

    response = client.get(
        "/api/cache/tasks",
        params={
            "startDate": "2024-12-01T00:00:00Z",
            "endDate": "2025-01-31T23:59:59Z",
            "dateCriteria": "created",
            "categories": "active",
        },
    )
    assert [task["id"] for task in response.json()["data"]["tasks"]] == ["B"]


def test_tasks_rejects_bad_parameters(client):
    assert client.get("/api/cache/tasks", params={"dateCriteria": "due"}).status_code == 400
    assert client.get("/api/cache/tasks", params={"startDate": "yesterday"}).status_code == 400
    assert client.get("/api/cache/tasks", params={"assigneeIds": "7,x"}).status_code == 400


def test_startup_recovers_interrupted_build(tmp_path, monkeypatch, service, source):
    import asyncio

    asyncio.run(service.start_build_progress(5, "crashed-run"))
    monkeypatch.setenv("CACHE_DIR", str(tmp_path / "cache"))
    configure_cache_service(service)
    configure_task_source(source)

    from backend.app import create_app

    with TestClient(create_app()) as test_client:
        data = test_client.get("/api/cache/build").json()["data"]

    assert data["isRunning"] is False
    assert data["persistedRunning"] is False
    assert data["progress"]["errors"] == ["build: interrupted before completion"]


def test_shutdown_closes_task_source(tmp_path, monkeypatch, service, source):
    monkeypatch.setenv("CACHE_DIR", str(tmp_path / "cache"))
    configure_cache_service(service)
    configure_task_source(source)

    from backend.app import create_app

    with TestClient(create_app()) as test_client:
        assert test_client.get("/api/cache/status").status_code == 200
        assert source.closed is False

    assert source.closed is True
