"""Tests for the Bangumi client."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from mediatracker.cache import ResponseCache
from mediatracker.concurrency import FairSemaphore, RetryPolicy
from mediatracker.config import Settings
from mediatracker.models import MediaType
from mediatracker.services.bangumi import BANGUMI_API_URL, BangumiClient, SubjectType


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


SUBJECT = {
    "id": 253,
    "type": 2,
    "name": "カウボーイビバップ",
    "name_cn": "星际牛仔",
    "summary": "2071年，人类已经移居到太阳系的各个行星。",
    "air_date": "1998-10-23",
    "images": {"large": "https://lain.bgm.tv/pic/cover/l/c2/0a/253_t3XWg.jpg"},
    "rating": {"score": 9.1},
    "url": "http://bgm.tv/subject/253",
}


def build_client(
    handler: Callable[[httpx.Request], httpx.Response], **overrides: Any
) -> tuple[BangumiClient, httpx.AsyncClient]:
    settings = Settings(_env_file=None, **overrides)
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=BANGUMI_API_URL
    )
    client = BangumiClient(
        settings,
        http_client,
        semaphore=FairSemaphore(2),
        detail_cache=ResponseCache(600, name="details"),
        retry=RetryPolicy(attempts=1, base_delay=0),
    )
    return client, http_client


@pytest.mark.anyio("asyncio")
async def test_search_maps_subjects_to_items() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["type"] == "2"
        assert request.url.params["responseGroup"] == "large"
        assert "authorization" not in request.headers
        return httpx.Response(200, json={"results": 1, "list": [SUBJECT]})

    client, http_client = build_client(handler)
    async with http_client:
        items = await client.search("星际牛仔", SubjectType.ANIME)

    (item,) = items
    assert item.title == "星际牛仔"
    assert item.type is MediaType.TV_SERIES
    assert item.release_date == "1998-10-23"
    assert item.rating == "9.1/10"
    assert item.poster_url.endswith("253_t3XWg.jpg")
    assert item.external_ref is not None
    assert item.external_ref.provider == "bangumi"
    assert item.sources == ["bangumi"]


@pytest.mark.anyio("asyncio")
async def test_search_without_matches_returns_empty_list() -> None:
    client, http_client = build_client(lambda request: httpx.Response(404, json={"code": 404}))
    async with http_client:
        assert await client.search("nothing here") == []


@pytest.mark.anyio("asyncio")
async def test_token_is_sent_as_bearer() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("authorization", ""))
        return httpx.Response(200, json={"id": 1, "username": "tester"})

    client, http_client = build_client(handler, BANGUMI_TOKEN="secret")
    async with http_client:
        status = await client.test_connection()

    assert status.ok is True
    assert seen == ["Bearer secret"]


@pytest.mark.anyio("asyncio")
async def test_details_are_cached() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={**SUBJECT, "date": "1998-04-03"})

    client, http_client = build_client(handler)
    async with http_client:
        first = await client.get_details(253)
        second = await client.get_details(253)

    assert first == second
    assert calls == ["/v0/subjects/253"]


def test_subject_conversion_edge_cases() -> None:
    comic = BangumiClient.subject_to_item(
        {"id": 7, "type": 1, "name": "ONE PIECE", "date": "0000-00-00", "images": None},
        as_type=MediaType.COMIC,
    )

    assert comic is not None
    assert comic.type is MediaType.COMIC
    assert comic.release_date == ""
    assert comic.link == "https://bgm.tv/subject/7"
    assert BangumiClient.subject_to_item({"id": 8, "name": ""}) is None
