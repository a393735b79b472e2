from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import httpx
import pytest

from backend.core.errors import SourceFetchError
from backend.infrastructure.clickup import ClickUpTaskSource


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_fetch_all_tasks_follows_pages():
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v2/list/list-1/task"
        assert request.headers["Authorization"] == "pk_test"
        seen.append(dict(request.url.params))
        page = int(request.url.params["page"])
        return httpx.Response(
            200,
            json={"tasks": [{"id": f"t{page}"}], "last_page": page == 2},
        )

    source = ClickUpTaskSource("pk_test", "list-1", http_client=_client(handler))
    tasks = asyncio.run(source.fetch_all_tasks())

    assert [task["id"] for task in tasks] == ["t0", "t1", "t2"]
    assert [params["page"] for params in seen] == ["0", "1", "2"]
    assert seen[0]["include_closed"] == "true"
    assert seen[0]["subtasks"] == "true"


def test_fetch_stops_at_page_limit():
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(int(request.url.params["page"]))
        return httpx.Response(200, json={"tasks": [{"id": "x"}], "last_page": False})

    source = ClickUpTaskSource("pk_test", "list-1", page_limit=3, http_client=_client(handler))
    tasks = asyncio.run(source.fetch_all_tasks())

    assert calls == [0, 1, 2]
    assert len(tasks) == 3


def test_http_error_raises_source_fetch_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="Token invalid")

    source = ClickUpTaskSource("pk_bad", "list-1", http_client=_client(handler))
    with pytest.raises(SourceFetchError, match="401"):
        asyncio.run(source.fetch_all_tasks())


def test_transport_error_raises_source_fetch_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    source = ClickUpTaskSource("pk_test", "list-1", http_client=_client(handler))
    with pytest.raises(SourceFetchError):
        asyncio.run(source.fetch_all_tasks())


def test_malformed_payload_raises_source_fetch_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    source = ClickUpTaskSource("pk_test", "list-1", http_client=_client(handler))
    with pytest.raises(SourceFetchError):
        asyncio.run(source.fetch_all_tasks())


def test_missing_credentials_fail_on_fetch():
    source = ClickUpTaskSource(None, "list-1", http_client=_client(lambda request: httpx.Response(200)))
    with pytest.raises(SourceFetchError, match="CLICKUP_API_KEY"):
        asyncio.run(source.fetch_all_tasks())

    source = ClickUpTaskSource("pk_test", "", http_client=_client(lambda request: httpx.Response(200)))
    with pytest.raises(SourceFetchError, match="CLICKUP_LIST_ID"):
        asyncio.run(source.fetch_all_tasks())


def test_api_base_must_be_absolute():
    with pytest.raises(ValueError):
        ClickUpTaskSource("pk_test", "list-1", api_base="api.clickup.com")


def test_aclose_releases_only_owned_client():
    injected = _client(lambda request: httpx.Response(200))
    borrowed = ClickUpTaskSource("pk_test", "list-1", http_client=injected)
    owned = ClickUpTaskSource("pk_test", "list-1")

    async def scenario():
        await borrowed.aclose()
        await owned.aclose()

    asyncio.run(scenario())

    assert injected.is_closed is False
    assert owned._client.is_closed is True
