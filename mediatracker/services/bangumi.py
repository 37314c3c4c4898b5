"""Client for the Bangumi (bgm.tv) anime, book, music and game catalogue."""

from __future__ import annotations

import logging
import time
from enum import IntEnum
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from ..cache import ResponseCache, cache_key
from ..concurrency import FairSemaphore, RetryPolicy
from ..config import Settings
from ..errors import ProviderError, QuotaExceededError
from ..merge import TRUST_METADATA
from ..models import ConnectionStatus, ExternalRef, MediaItem, MediaType

logger = logging.getLogger(__name__)

BANGUMI_API_URL = "https://api.bgm.tv"
MAX_RESULTS = 10


class SubjectType(IntEnum):
    BOOK = 1
    ANIME = 2
    MUSIC = 3
    GAME = 4
    REAL = 6


SUBJECT_MEDIA_TYPES: Mapping[int, MediaType] = {
    SubjectType.BOOK: MediaType.BOOK,
    SubjectType.ANIME: MediaType.TV_SERIES,
    SubjectType.MUSIC: MediaType.MUSIC,
    SubjectType.GAME: MediaType.OTHER,
    SubjectType.REAL: MediaType.TV_SERIES,
}

# Subject type searched for a declared media type; ``None`` searches all.
SUBJECT_FOR_MEDIA_TYPE: Mapping[MediaType, SubjectType | None] = {
    MediaType.BOOK: SubjectType.BOOK,
    MediaType.COMIC: SubjectType.BOOK,
    MediaType.MUSIC: SubjectType.MUSIC,
    MediaType.TV_SERIES: SubjectType.ANIME,
    MediaType.MOVIE: SubjectType.ANIME,
    MediaType.SHORT_DRAMA: SubjectType.REAL,
    MediaType.OTHER: None,
}


class BangumiClient:
    """Searches subjects and fetches subject details from Bangumi."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        semaphore: FairSemaphore,
        detail_cache: ResponseCache[dict[str, Any]],
        retry: RetryPolicy | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._semaphore = semaphore
        self._detail_cache = detail_cache
        self._retry = retry or RetryPolicy.from_settings(settings)

    @property
    def enabled(self) -> bool:
        return self._settings.enable_bangumi

    async def search(
        self,
        query: str,
        subject_type: SubjectType | None = None,
        *,
        as_type: MediaType | None = None,
    ) -> list[MediaItem]:
        """Return subjects matching ``query``.

        ``as_type`` overrides the media type derived from the subject code, e.g.
        to label book subjects as comics for a comic search.
        """

        if not self.enabled or not query.strip():
            return []
        params: dict[str, Any] = {"responseGroup": "large", "max_results": MAX_RESULTS}
        if subject_type is not None:
            params["type"] = int(subject_type)
        try:
            payload = await self._get(f"/search/subject/{quote(query, safe='')}", params)
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("Bangumi search for %s failed: %s", query, exc)
            return []

        items: list[MediaItem] = []
        for subject in payload.get("list", []) or []:
            if not isinstance(subject, dict) or "id" not in subject:
                continue
            item = self.subject_to_item(subject, as_type=as_type)
            if item is not None:
                items.append(item)
        return items

    async def get_details(self, subject_id: int) -> dict[str, Any] | None:
        """Return the raw ``/v0/subjects/{id}`` record, cached for the detail TTL."""

        key = cache_key("bangumi-details", str(subject_id))
        cached = self._detail_cache.get(key)
        if cached is not None:
            return cached
        try:
            payload = await self._get(f"/v0/subjects/{subject_id}", {})
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("Bangumi details for %s failed: %s", subject_id, exc)
            return None
        self._detail_cache.set(key, payload)
        return payload

    async def test_connection(self, token: str | None = None) -> ConnectionStatus:
        """Check ``/v0/me`` with a token, or the public search endpoint without."""

        resolved_token = token or self._settings.bangumi_token
        started = time.perf_counter()
        try:
            if resolved_token:
                await self._get("/v0/me", {}, token=resolved_token)
            else:
                await self._get(
                    "/search/subject/test",
                    {"responseGroup": "small", "max_results": 1},
                    token="",
                )
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            return ConnectionStatus(ok=False, provider="bangumi", error=str(exc))
        return ConnectionStatus(
            ok=True,
            provider="bangumi",
            latency_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _get(
        self, path: str, params: dict[str, Any], *, token: str | None = None
    ) -> dict[str, Any]:
        headers: dict[str, str] = {"Accept": "application/json"}
        bearer = self._settings.bangumi_token if token is None else token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        async def attempt() -> dict[str, Any]:
            async with self._semaphore:
                response = await self._client.get(path, params=params, headers=headers)
            if response.status_code == 404 and path.startswith("/search/"):
                # Legacy search answers 404 when nothing matched.
                return {"list": []}
            if response.status_code == 429:
                raise QuotaExceededError("bangumi")
            if response.status_code >= 400:
                raise ProviderError(
                    "bangumi",
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("Unexpected Bangumi payload")
            return data

        return await self._retry.run(attempt, description=f"Bangumi {path}")

    @staticmethod
    def subject_to_item(
        subject: dict[str, Any], *, as_type: MediaType | None = None
    ) -> MediaItem | None:
        title = subject.get("name_cn") or subject.get("name")
        if not title:
            return None
        subject_type = subject.get("type")
        media_type = as_type or SUBJECT_MEDIA_TYPES.get(subject_type, MediaType.OTHER)
        images = subject.get("images") or {}
        rating = subject.get("rating") or {}
        release_date = subject.get("air_date") or subject.get("date") or ""
        if release_date.startswith("0000"):
            release_date = ""
        score = rating.get("score") if isinstance(rating, dict) else None
        item = MediaItem(
            title=title,
            type=media_type,
            release_date=release_date,
            description=subject.get("summary") or "",
            rating=f"{score}/10" if score else "",
            poster_url=(images.get("large") or images.get("common") or "") if isinstance(images, dict) else "",
            link=subject.get("url") or f"https://bgm.tv/subject/{subject['id']}",
            external_ref=ExternalRef(
                provider="bangumi", id=int(subject["id"]), kind=str(subject_type or "")
            ),
            sources=["bangumi"],
        )
        return item.mark_trust(TRUST_METADATA)
