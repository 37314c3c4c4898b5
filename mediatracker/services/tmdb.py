"""Utilities for resolving metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from ..cache import ResponseCache, cache_key
from ..concurrency import FairSemaphore, RetryPolicy
from ..config import Settings
from ..errors import ProviderError, QuotaExceededError
from ..merge import TRUST_METADATA
from ..models import ConnectionStatus, ExternalRef, MediaItem, MediaType
from ..utils import normalize_title

logger = logging.getLogger(__name__)

TMDB_API_URL = "https://api.themoviedb.org/3"
POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"
MAX_CAST = 5

TMDBKind = Literal["movie", "tv", "multi"]

LANGUAGE_CODES = {"zh": "zh-CN", "en": "en-US"}


@dataclass(slots=True)
class TMDBDetails:
    """Normalized view of a TMDB movie or TV detail record."""

    tmdb_id: int
    kind: str
    title: str
    release_date: str = ""
    overview: str = ""
    director: str = ""
    cast: list[str] = field(default_factory=list)
    rating: str = ""
    poster_url: str = ""
    is_ongoing: bool = False
    latest_update_info: str = ""

    def to_item(self) -> MediaItem:
        item = MediaItem(
            title=self.title,
            type=MediaType.MOVIE if self.kind == "movie" else MediaType.TV_SERIES,
            release_date=self.release_date,
            director_or_author=self.director,
            description=self.overview,
            cast=self.cast,
            rating=self.rating,
            poster_url=self.poster_url,
            is_ongoing=self.is_ongoing,
            latest_update_info=self.latest_update_info,
            external_ref=ExternalRef(provider="tmdb", id=self.tmdb_id, kind=self.kind),
            sources=["tmdb"],
        )
        return item.mark_trust(TRUST_METADATA)


class TMDBClient:
    """Client responsible for searching TMDB and fetching detail records."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        semaphore: FairSemaphore,
        detail_cache: ResponseCache[TMDBDetails],
        retry: RetryPolicy | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._semaphore = semaphore
        self._detail_cache = detail_cache
        self._retry = retry or RetryPolicy.from_settings(settings)

    @property
    def enabled(self) -> bool:
        return bool(self._settings.enable_tmdb and self._settings.tmdb_api_key)

    @property
    def primary_language(self) -> str:
        return LANGUAGE_CODES[self._settings.language]

    async def search(self, query: str, kind: TMDBKind = "multi") -> list[MediaItem]:
        """Return movie/TV records matching ``query``; person hits are dropped."""

        if not self.enabled or not query.strip():
            return []
        try:
            payload = await self._get(
                f"/search/{kind}",
                {
                    "query": query,
                    "include_adult": "false",
                    "language": self.primary_language,
                    "page": 1,
                },
            )
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("TMDB search for %s (%s) failed: %s", query, kind, exc)
            return []

        items: list[MediaItem] = []
        for result in payload.get("results", []) or []:
            if not isinstance(result, dict) or "id" not in result:
                continue
            media_kind = result.get("media_type") or kind
            if media_kind not in {"movie", "tv"}:
                continue
            title = result.get("title") or result.get("name")
            if not title:
                continue
            item = MediaItem(
                title=title,
                type=MediaType.MOVIE if media_kind == "movie" else MediaType.TV_SERIES,
                release_date=result.get("release_date") or result.get("first_air_date") or "",
                description=result.get("overview") or "",
                rating=self._format_rating(result.get("vote_average")),
                poster_url=self._build_image_url(result.get("poster_path") or ""),
                external_ref=ExternalRef(provider="tmdb", id=int(result["id"]), kind=media_kind),
                sources=["tmdb"],
            )
            items.append(item.mark_trust(TRUST_METADATA))
        return items

    async def find_reference(
        self, title: str, kind: Literal["movie", "tv"], year: str = ""
    ) -> ExternalRef | None:
        """Resolve the best TMDB identifier for ``title``.

        Exact title matches win, preferring one from ``year`` when known;
        otherwise a same-year hit, then the first hit.
        """

        candidates = await self.search(title, kind)
        if not candidates:
            return None

        normalized = normalize_title(title)
        best_match: MediaItem | None = None
        for candidate in candidates:
            if normalize_title(candidate.title) == normalized:
                if not year or candidate.year() == year:
                    best_match = candidate
                    break
            if best_match is None:
                best_match = candidate
            elif year and candidate.year() == year and best_match.year() != year:
                best_match = candidate
        return best_match.external_ref if best_match else None

    async def get_details(
        self, tmdb_id: int, kind: str, language: str | None = None
    ) -> TMDBDetails | None:
        """Fetch credits and overview, filling an empty overview bilingually."""

        if not self.enabled:
            return None
        language = language or self.primary_language
        key = cache_key("tmdb-details", f"{kind}/{tmdb_id}", {"language": language})
        cached = self._detail_cache.get(key)
        if cached is not None:
            return cached

        try:
            payload = await self._get(
                f"/{kind}/{tmdb_id}",
                {"language": language, "append_to_response": "credits"},
            )
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("TMDB details for %s/%s failed: %s", kind, tmdb_id, exc)
            return None

        details = self._parse_details(payload, tmdb_id, kind)
        if not details.overview:
            other_language = "en-US" if language == "zh-CN" else "zh-CN"
            try:
                fallback = await self._get(f"/{kind}/{tmdb_id}", {"language": other_language})
            except (httpx.HTTPError, ProviderError, ValueError) as exc:
                logger.debug("TMDB %s overview for %s failed: %s", other_language, tmdb_id, exc)
            else:
                details.overview = (fallback.get("overview") or "").strip()

        self._detail_cache.set(key, details)
        return details

    async def test_connection(self, api_key: str | None = None) -> ConnectionStatus:
        resolved_key = api_key or self._settings.tmdb_api_key
        if not resolved_key:
            return ConnectionStatus(ok=False, provider="tmdb", error="Missing API key")
        started = time.perf_counter()
        try:
            await self._get("/authentication/token/new", {}, api_key=resolved_key)
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            return ConnectionStatus(ok=False, provider="tmdb", error=str(exc))
        return ConnectionStatus(
            ok=True,
            provider="tmdb",
            latency_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _get(
        self, path: str, params: dict[str, Any], *, api_key: str | None = None
    ) -> dict[str, Any]:
        query = {**params, "api_key": api_key or self._settings.tmdb_api_key}

        async def attempt() -> dict[str, Any]:
            async with self._semaphore:
                response = await self._client.get(path, params=query)
            if response.status_code == 429:
                raise QuotaExceededError("tmdb")
            if response.status_code >= 400:
                raise ProviderError(
                    "tmdb",
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("Unexpected TMDB payload")
            return data

        return await self._retry.run(attempt, description=f"TMDB {path}")

    def _parse_details(self, payload: dict[str, Any], tmdb_id: int, kind: str) -> TMDBDetails:
        credits = payload.get("credits") or {}
        director = ""
        if kind == "movie":
            for member in credits.get("crew", []) or []:
                if isinstance(member, dict) and member.get("job") == "Director":
                    director = member.get("name") or ""
                    break
        else:
            creators = [
                creator.get("name")
                for creator in payload.get("created_by", []) or []
                if isinstance(creator, dict) and creator.get("name")
            ]
            director = ", ".join(creators)

        cast = [
            member.get("name")
            for member in (credits.get("cast", []) or [])[:MAX_CAST]
            if isinstance(member, dict) and member.get("name")
        ]

        latest = ""
        last_episode = payload.get("last_episode_to_air")
        if isinstance(last_episode, dict) and last_episode.get("episode_number"):
            latest = (
                f"S{last_episode.get('season_number') or 1}"
                f"E{last_episode.get('episode_number')}"
            )

        return TMDBDetails(
            tmdb_id=tmdb_id,
            kind=kind,
            title=payload.get("title") or payload.get("name") or "",
            release_date=payload.get("release_date") or payload.get("first_air_date") or "",
            overview=(payload.get("overview") or "").strip(),
            director=director,
            cast=cast,
            rating=self._format_rating(payload.get("vote_average")),
            poster_url=self._build_image_url(payload.get("poster_path") or ""),
            is_ongoing=bool(payload.get("in_production")),
            latest_update_info=latest,
        )

    @staticmethod
    def _format_rating(value: object) -> str:
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return f"{value:.1f}/10"
        return ""

    @staticmethod
    def _build_image_url(path: str, base_url: str = POSTER_BASE_URL) -> str:
        if not path:
            return ""
        if path.startswith("http"):
            return path
        return f"{base_url}{path}"
