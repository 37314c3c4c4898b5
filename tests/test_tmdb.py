"""Tests for the TMDB client."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from mediatracker.cache import ResponseCache
from mediatracker.concurrency import FairSemaphore, RetryPolicy
from mediatracker.config import Settings
from mediatracker.merge import TRUST_METADATA
from mediatracker.models import MediaType
from mediatracker.services.tmdb import TMDB_API_URL, TMDBClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


DUNE_DETAILS = {
    "id": 438631,
    "title": "Dune",
    "release_date": "2021-10-22",
    "overview": "Paul Atreides leads nomadic tribes in a battle to control the desert planet Arrakis.",
    "vote_average": 7.8,
    "poster_path": "/d5NXSklXo0qyIYkgV94XAgMIckC.jpg",
    "credits": {
        "crew": [
            {"job": "Producer", "name": "Mary Parent"},
            {"job": "Director", "name": "Denis Villeneuve"},
        ],
        "cast": [{"name": f"Actor {index}"} for index in range(8)],
    },
}


def build_client(
    handler: Callable[[httpx.Request], httpx.Response], **overrides: Any
) -> tuple[TMDBClient, httpx.AsyncClient]:
    settings = Settings(_env_file=None, TMDB_API_KEY="tmdb-key", **overrides)
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=TMDB_API_URL
    )
    client = TMDBClient(
        settings,
        http_client,
        semaphore=FairSemaphore(2),
        detail_cache=ResponseCache(600, name="details"),
        retry=RetryPolicy(attempts=1, base_delay=0),
    )
    return client, http_client


@pytest.mark.anyio("asyncio")
async def test_search_multi_drops_people() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/3/search/multi"
        assert request.url.params["api_key"] == "tmdb-key"
        assert request.url.params["language"] == "en-US"
        return httpx.Response(
            200,
            json={
                "results": [
                    {"id": 1, "media_type": "person", "name": "Zendaya"},
                    {"id": 438631, "media_type": "movie", "title": "Dune", "release_date": "2021-10-22", "vote_average": 7.8},
                    {"id": 90228, "media_type": "tv", "name": "Dune: Prophecy", "first_air_date": "2024-11-17"},
                ]
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        items = await client.search("Dune")

    assert [(item.title, item.type) for item in items] == [
        ("Dune", MediaType.MOVIE),
        ("Dune: Prophecy", MediaType.TV_SERIES),
    ]
    assert items[0].rating == "7.8/10"
    assert items[0].external_ref is not None
    assert items[0].external_ref.id == 438631
    assert items[0].trust_of("release_date") == TRUST_METADATA


@pytest.mark.anyio("asyncio")
async def test_disabled_client_makes_no_requests() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("TMDB should not be called")

    client, http_client = build_client(handler, ENABLE_TMDB=False)
    async with http_client:
        assert await client.search("Dune") == []
        assert await client.get_details(438631, "movie") is None


@pytest.mark.anyio("asyncio")
async def test_details_are_parsed_and_cached() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        assert request.url.params["append_to_response"] == "credits"
        return httpx.Response(200, json=DUNE_DETAILS)

    client, http_client = build_client(handler)
    async with http_client:
        details = await client.get_details(438631, "movie")
        again = await client.get_details(438631, "movie")

    assert details is again
    assert calls == ["/3/movie/438631"]
    assert details is not None
    assert details.director == "Denis Villeneuve"
    assert details.cast == [f"Actor {index}" for index in range(5)]
    assert details.poster_url == "https://image.tmdb.org/t/p/w500/d5NXSklXo0qyIYkgV94XAgMIckC.jpg"
    item = details.to_item()
    assert item.release_date == "2021-10-22"
    assert item.director_or_author == "Denis Villeneuve"


@pytest.mark.anyio("asyncio")
async def test_empty_overview_is_filled_from_the_other_language() -> None:
    languages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        language = request.url.params["language"]
        languages.append(language)
        if language == "zh-CN":
            return httpx.Response(200, json={**DUNE_DETAILS, "title": "沙丘", "overview": ""})
        return httpx.Response(200, json={"overview": "English synopsis."})

    client, http_client = build_client(handler, LANGUAGE="zh")
    async with http_client:
        details = await client.get_details(438631, "movie")

    assert languages == ["zh-CN", "en-US"]
    assert details is not None
    assert details.title == "沙丘"
    assert details.overview == "English synopsis."


@pytest.mark.anyio("asyncio")
async def test_find_reference_prefers_exact_title_from_year() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/3/search/movie"
        return httpx.Response(
            200,
            json={
                "results": [
                    {"id": 2, "title": "Dune: Part Two", "release_date": "2024-03-01"},
                    {"id": 841, "title": "Dune", "release_date": "1984-12-14"},
                    {"id": 438631, "title": "Dune", "release_date": "2021-10-22"},
                ]
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        reference = await client.find_reference("Dune", "movie", "2021")

    assert reference is not None
    assert (reference.id, reference.kind) == (438631, "movie")


@pytest.mark.anyio("asyncio")
async def test_errors_degrade_to_empty_results() -> None:
    client, http_client = build_client(lambda request: httpx.Response(500, text="boom"))
    async with http_client:
        assert await client.search("Dune") == []
        status = await client.test_connection()

    assert status.ok is False
    assert "500" in (status.error or "")
