"""Tests for the enrichment engine and the poster fallback chain."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

import httpx
import pytest

from mediatracker.cache import ResponseCache
from mediatracker.concurrency import FairSemaphore, QuotaNotifier, RetryPolicy
from mediatracker.config import Settings
from mediatracker.merge import TRUST_HEURISTIC
from mediatracker.models import MediaItem, MediaType
from mediatracker.services.bangumi import BangumiClient
from mediatracker.services.enrichment import EnrichmentEngine, missing_detail_fields
from mediatracker.services.posters import PosterResolver, extract_page_image
from mediatracker.services.tmdb import TMDBClient
from mediatracker.services.web_search import WebSearchClient
from mediatracker.utils import placeholder_poster


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


Handler = Callable[[httpx.Request], "httpx.Response | Awaitable[httpx.Response]"]

LONG_OVERVIEW = (
    "Paul Atreides, a brilliant and gifted young man born into a great destiny, "
    "must travel to the most dangerous planet in the universe."
)


def build_engine(
    handler: Handler, **overrides: Any
) -> tuple[EnrichmentEngine, list[httpx.AsyncClient]]:
    base = {
        "TMDB_API_KEY": "tmdb-key",
        "ENABLE_SEARCH": False,
        "ENABLE_BANGUMI": False,
        "RETRY_ATTEMPTS": 1,
    }
    base.update(overrides)
    settings = Settings(_env_file=None, **base)
    transport = httpx.MockTransport(handler)
    tmdb_http = httpx.AsyncClient(transport=transport, base_url="https://api.themoviedb.org/3")
    bangumi_http = httpx.AsyncClient(transport=transport, base_url="https://api.bgm.tv")
    web_http = httpx.AsyncClient(transport=transport)
    retry = RetryPolicy(attempts=1, base_delay=0)
    api_semaphore = FairSemaphore(2)
    search_semaphore = FairSemaphore(4)
    detail_cache: ResponseCache[Any] = ResponseCache(600)

    tmdb = TMDBClient(
        settings, tmdb_http, semaphore=api_semaphore, detail_cache=detail_cache, retry=retry
    )
    bangumi = BangumiClient(
        settings, bangumi_http, semaphore=api_semaphore, detail_cache=detail_cache, retry=retry
    )
    web_search = WebSearchClient(
        settings,
        web_http,
        semaphore=search_semaphore,
        cache=ResponseCache(600),
        status_cache=ResponseCache(60),
        notifier=QuotaNotifier(60),
        retry=retry,
    )
    posters = PosterResolver(
        settings,
        web_http,
        web_search=web_search,
        tmdb=tmdb,
        semaphore=search_semaphore,
        image_cache=ResponseCache(600),
    )
    engine = EnrichmentEngine(settings, tmdb=tmdb, bangumi=bangumi, posters=posters)
    return engine, [tmdb_http, bangumi_http, web_http]


async def close_all(clients: list[httpx.AsyncClient]) -> None:
    for client in clients:
        await client.aclose()


def tmdb_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/3/search/movie":
        return httpx.Response(
            200,
            json={"results": [{"id": 438631, "title": "Dune", "release_date": "2021-10-22"}]},
        )
    if request.url.path == "/3/movie/438631":
        return httpx.Response(
            200,
            json={
                "id": 438631,
                "title": "Dune",
                "release_date": "2021-10-22",
                "overview": LONG_OVERVIEW,
                "poster_path": "/dune.jpg",
                "vote_average": 7.8,
                "credits": {
                    "crew": [{"job": "Director", "name": "Denis Villeneuve"}],
                    "cast": [{"name": "Timothée Chalamet"}, {"name": "Zendaya"}],
                },
            },
        )
    return httpx.Response(404)


@pytest.mark.anyio("asyncio")
async def test_year_only_movie_gets_full_date_from_tmdb() -> None:
    """An AI record dated "2021" comes back with TMDB's full release date."""

    engine, clients = build_engine(tmdb_handler)
    item = MediaItem(title="Dune", type="Movie", releaseDate="2021", sources=["ai"])
    item.mark_trust(TRUST_HEURISTIC)
    try:
        await engine.enrich([item])
    finally:
        await close_all(clients)

    assert item.release_date == "2021-10-22"
    assert item.director_or_author == "Denis Villeneuve"
    assert item.description == LONG_OVERVIEW
    assert item.cast == ["Timothée Chalamet", "Zendaya"]
    assert item.poster_url == "https://image.tmdb.org/t/p/w500/dune.jpg"
    assert item.external_ref is not None
    assert item.sources == ["ai", "tmdb"]
    assert missing_detail_fields(item) == []


@pytest.mark.anyio("asyncio")
async def test_slow_lookup_times_out_and_leaves_record_unchanged() -> None:
    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(404)

    engine, clients = build_engine(slow_handler, ENRICHMENT_TIMEOUT=0.1)
    item = MediaItem(title="Dune", type="Movie", releaseDate="2021")
    started = time.perf_counter()
    try:
        result = await engine.enrich([item])
    finally:
        await close_all(clients)

    assert time.perf_counter() - started < 2
    assert result == [item]
    assert item.release_date == "2021"
    assert item.poster_url == ""


@pytest.mark.anyio("asyncio")
async def test_complete_records_are_not_looked_up() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("complete records need no lookups")

    engine, clients = build_engine(handler)
    item = MediaItem(
        title="Dune",
        type="Movie",
        releaseDate="2021-10-22",
        directorOrAuthor="Denis Villeneuve",
        description=LONG_OVERVIEW,
        cast=["Zendaya"],
        poster_url="https://image.tmdb.org/t/p/w500/dune.jpg",
    )
    try:
        await engine.enrich([item])
    finally:
        await close_all(clients)


@pytest.mark.anyio("asyncio")
async def test_book_cover_comes_from_openlibrary() -> None:
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(f"{request.method} {request.url.host}")
        if request.url.host == "openlibrary.org":
            assert request.url.params["author"] == "Frank Herbert"
            return httpx.Response(200, json={"docs": [{"cover_i": 12345}]})
        if request.url.host == "covers.openlibrary.org":
            return httpx.Response(200, headers={"content-type": "image/jpeg"})
        return httpx.Response(404)

    engine, clients = build_engine(handler)
    item = MediaItem(
        title="Dune",
        type="Book",
        directorOrAuthor="Frank Herbert",
        poster_url=placeholder_poster("Book"),
    )
    try:
        await engine.enrich([item])
    finally:
        await close_all(clients)

    assert item.poster_url == "https://covers.openlibrary.org/b/id/12345-L.jpg"
    assert requests == ["GET openlibrary.org", "HEAD covers.openlibrary.org"]


@pytest.mark.anyio("asyncio")
async def test_image_check_rejects_non_images_and_blacklisted_hosts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<html></html>")

    engine, clients = build_engine(handler)
    resolver: PosterResolver = engine._posters
    try:
        assert await resolver.is_loadable("https://example.com/poster") is False
        assert await resolver.is_loadable("https://placehold.co/600x900") is False
        assert await resolver.is_loadable("not a url") is False
    finally:
        await close_all(clients)


def test_stage_order_depends_on_media_type() -> None:
    engine, _ = build_engine(tmdb_handler)
    resolver: PosterResolver = engine._posters

    assert [name for name, _ in resolver.stages_for(MediaType.MOVIE)] == [
        "tmdb",
        "image-search",
        "page-image",
        "wikipedia",
    ]
    assert resolver.stages_for(MediaType.COMIC)[0][0] == "openlibrary"
    assert resolver.stages_for(MediaType.MUSIC)[0][0] == "musicbrainz"


def test_extract_page_image_resolves_relative_urls() -> None:
    html = '<html><head><meta property="og:image" content="/images/poster.jpg"></head></html>'

    assert (
        extract_page_image(html, "https://www.douban.com/subject/1/")
        == "https://www.douban.com/images/poster.jpg"
    )
    assert extract_page_image("<html></html>") is None


@pytest.mark.anyio("asyncio")
async def test_unexpected_cover_payloads_leave_record_unenriched() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "openlibrary.org":
            return httpx.Response(200, json=[])
        if request.url.host == "musicbrainz.org":
            return httpx.Response(200, json={"releases": ["not-a-release"]})
        if request.url.host.endswith("wikipedia.org"):
            return httpx.Response(200, json={"query": {"pages": {"1": {"original": "x.jpg"}}}})
        return httpx.Response(404)

    engine, clients = build_engine(handler)
    book = MediaItem(title="Dune", type="Book", poster_url=placeholder_poster("Book"))
    album = MediaItem(title="Dune OST", type="Music", poster_url=placeholder_poster("Music"))
    try:
        result = await engine.enrich([book, album])
    finally:
        await close_all(clients)

    assert result == [book, album]
    assert book.poster_url == placeholder_poster("Book")
    assert album.poster_url == placeholder_poster("Music")


@pytest.mark.anyio("asyncio")
async def test_one_failing_record_does_not_fail_the_batch() -> None:
    engine, clients = build_engine(tmdb_handler)
    broken = MediaItem(title="Broken", type="Book")
    dune = MediaItem(title="Dune", type="Movie", releaseDate="2021")
    original = engine.enrich_item

    async def enrich_item(item: MediaItem, language: str = "en") -> MediaItem:
        if item.title == "Broken":
            raise TypeError("unexpected payload shape")
        return await original(item, language)

    engine.enrich_item = enrich_item  # type: ignore[method-assign]
    try:
        result = await engine.enrich([broken, dune])
    finally:
        await close_all(clients)

    assert result == [broken, dune]
    assert broken.release_date == ""
    assert dune.release_date == "2021-10-22"


@pytest.mark.anyio("asyncio")
async def test_image_check_falls_back_to_a_ranged_get() -> None:
    seen: list[tuple[str, str | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.headers.get("range")))
        if request.method == "HEAD":
            return httpx.Response(405)
        return httpx.Response(206, headers={"content-type": "image/jpeg"}, content=b"\xff\xd8")

    engine, clients = build_engine(handler)
    resolver: PosterResolver = engine._posters
    try:
        assert await resolver.is_loadable("https://img.example.com/dune.jpg") is True
    finally:
        await close_all(clients)

    assert seen == [("HEAD", None), ("GET", "bytes=0-1023")]
