"""HTTP surface tests using a stubbed search service."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mediatracker.config import Settings
from mediatracker.main import create_app, parse_media_type
from mediatracker.models import ConnectionStatus, IOLogEntry, MediaItem, MediaType, UpdateStatus
from mediatracker.services.io_log import IOLog
from mediatracker.services.search_service import MediaSearchService


class StubConnection:
    def __init__(self, provider: str):
        self.provider = provider

    async def test_connection(self) -> ConnectionStatus:
        return ConnectionStatus(ok=True, provider=self.provider, latency_ms=5)


class StubSearchService(MediaSearchService):
    def __init__(self) -> None:
        self.requests: list[tuple[str, MediaType | None]] = []
        self.update_requests: list[list[str]] = []
        self._web_search = StubConnection("duckduckgo")
        self._tmdb = StubConnection("tmdb")
        self._bangumi = StubConnection("bangumi")

    async def search_media(self, query, media_type=None):
        self.requests.append((query, media_type))
        return [
            MediaItem(title="Dune", type="Movie", releaseDate="2021-10-22").ensure_poster()
        ]

    async def trending(self, today=None):
        return [MediaItem(title="Severance", type="TV Series", releaseDate="2025-01-17")]

    async def check_updates(self, items):
        self.update_requests.append([item.title for item in items])
        return [
            UpdateStatus(id=item.id, latestUpdateInfo="Season 2 Episode 10", isOngoing=False)
            for item in items
        ]


@pytest.fixture
def client_and_service() -> tuple[TestClient, StubSearchService]:
    app = create_app(Settings(_env_file=None))
    service = StubSearchService()
    app.state.search_service = service
    io_log = IOLog()
    io_log.record(IOLogEntry(channel="ai", model="kimi-latest"))
    app.state.io_log = io_log
    return TestClient(app), service


def test_healthcheck(client_and_service) -> None:
    client, _ = client_and_service

    assert client.get("/healthz").json() == {"status": "ok"}


def test_search_returns_camel_case_records(client_and_service) -> None:
    client, service = client_and_service

    response = client.get("/api/search", params={"q": "Dune", "type": "movie"})

    assert response.status_code == 200
    (result,) = response.json()["results"]
    assert result["title"] == "Dune"
    assert result["releaseDate"] == "2021-10-22"
    assert result["posterUrl"].startswith("https://placehold.co/")
    assert service.requests == [("Dune", MediaType.MOVIE)]


def test_search_validates_input(client_and_service) -> None:
    client, service = client_and_service

    assert client.get("/api/search", params={"q": "  "}).status_code == 400
    assert client.get("/api/search", params={"q": "Dune", "type": "Podcast"}).status_code == 400
    assert service.requests == []


def test_provider_connection_routes(client_and_service) -> None:
    client, _ = client_and_service

    response = client.post("/api/providers/tmdb/test")

    assert response.status_code == 200
    assert response.json()["provider"] == "tmdb"
    assert client.post("/api/providers/imdb/test").status_code == 404


def test_recent_logs(client_and_service) -> None:
    client, _ = client_and_service

    (entry,) = client.get("/api/logs").json()["entries"]

    assert entry["channel"] == "ai"
    assert entry["model"] == "kimi-latest"


def test_parse_media_type() -> None:
    assert parse_media_type(None) is None
    assert parse_media_type("All") is None
    assert parse_media_type("tv series") is MediaType.TV_SERIES
    with pytest.raises(ValueError):
        parse_media_type("Podcast")


def test_trending_route(client_and_service) -> None:
    client, _ = client_and_service

    response = client.get("/api/trending")

    assert response.status_code == 200
    (result,) = response.json()["results"]
    assert result["title"] == "Severance"
    assert result["type"] == "TV Series"


def test_update_route_round_trips_ids(client_and_service) -> None:
    client, service = client_and_service

    response = client.post(
        "/api/updates",
        json={"items": [{"id": "abc", "title": "Severance", "type": "TV Series", "isOngoing": True}]},
    )

    assert response.status_code == 200
    assert response.json() == {
        "updates": [{"id": "abc", "latestUpdateInfo": "Season 2 Episode 10", "isOngoing": False}]
    }
    assert service.update_requests == [["Severance"]]


def test_update_route_rejects_records_without_title(client_and_service) -> None:
    client, service = client_and_service

    assert client.post("/api/updates", json={"items": [{"type": "Movie"}]}).status_code == 422
    assert service.update_requests == []
