"""Ordered fallback chain that resolves a loadable poster image for a record."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Mapping

import httpx
from bs4 import BeautifulSoup

from ..cache import ResponseCache
from ..classifier import Language
from ..concurrency import FairSemaphore
from ..config import Settings
from ..errors import ProviderError
from ..merge import is_missing, is_missing_poster
from ..models import MediaItem, MediaType
from ..query_planner import domain_group_for
from ..utils import host_matches
from .tmdb import TMDBClient
from .web_search import WebSearchClient

logger = logging.getLogger(__name__)

OPENLIBRARY_SEARCH_URL = "https://openlibrary.org/search.json"
OPENLIBRARY_COVER_URL = "https://covers.openlibrary.org/b"
MUSICBRAINZ_RELEASE_URL = "https://musicbrainz.org/ws/2/release"
COVERART_RELEASE_URL = "https://coverartarchive.org/release"
WIKIPEDIA_API_URL = "https://{language}.wikipedia.org/w/api.php"
TMDB_IMAGE_HOST = "image.tmdb.org"

MAX_PAGE_FETCHES = 3

POSTER_QUERY_TERMS: Mapping[Language, Mapping[MediaType, str]] = {
    "zh": {
        MediaType.MOVIE: "电影海报 竖版",
        MediaType.TV_SERIES: "电视剧海报 竖版",
        MediaType.BOOK: "书封面",
        MediaType.COMIC: "漫画封面",
        MediaType.MUSIC: "专辑封面",
        MediaType.SHORT_DRAMA: "短剧海报 竖版",
        MediaType.OTHER: "海报 竖版",
    },
    "en": {
        MediaType.MOVIE: "movie poster",
        MediaType.TV_SERIES: "tv series poster",
        MediaType.BOOK: "book cover",
        MediaType.COMIC: "comic cover",
        MediaType.MUSIC: "album cover",
        MediaType.SHORT_DRAMA: "short drama poster",
        MediaType.OTHER: "poster",
    },
}

_IMAGE_META_SELECTORS = (
    'meta[property="og:image"]',
    'meta[property="og:image:url"]',
    'meta[name="twitter:image"]',
    'meta[itemprop="image"]',
)

Stage = Callable[[MediaItem, Language], Awaitable[list[str]]]


def poster_query(item: MediaItem, language: Language) -> str:
    term = POSTER_QUERY_TERMS[language].get(item.type, POSTER_QUERY_TERMS[language][MediaType.OTHER])
    if language == "zh":
        return f"{item.title} {term}"
    return f'"{item.title}" {term}'


def extract_page_image(html: str, base_url: str = "") -> str | None:
    """Return the representative image declared by a page's meta tags."""

    soup = BeautifulSoup(html, "html.parser")
    for selector in _IMAGE_META_SELECTORS:
        node = soup.select_one(selector)
        if node is None:
            continue
        content = (node.get("content") or "").strip()
        if content:
            return str(httpx.URL(base_url).join(content)) if base_url else content
    return None


class PosterResolver:
    """Walks the poster sources in order and returns the first loadable image.

    Movies and series start from TMDB; books, comics and music start from the
    dedicated cover APIs. Every candidate must answer with an image before it
    is accepted and blacklisted hosts are rejected outright.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        web_search: WebSearchClient,
        tmdb: TMDBClient,
        semaphore: FairSemaphore,
        image_cache: ResponseCache[bool],
    ):
        self._settings = settings
        self._client = http_client
        self._web_search = web_search
        self._tmdb = tmdb
        self._semaphore = semaphore
        self._image_cache = image_cache

    def stages_for(self, media_type: MediaType) -> list[tuple[str, Stage]]:
        generic: list[tuple[str, Stage]] = [
            ("tmdb", self._from_tmdb),
            ("image-search", self._from_image_search),
            ("page-image", self._from_page_images),
            ("wikipedia", self._from_wikipedia),
        ]
        if media_type in {MediaType.BOOK, MediaType.COMIC}:
            return [("openlibrary", self._from_openlibrary), *generic[1:]]
        if media_type is MediaType.MUSIC:
            return [("musicbrainz", self._from_musicbrainz), *generic[1:]]
        return generic

    async def resolve(self, item: MediaItem, language: Language = "en") -> str | None:
        if is_missing(item.title):
            return None
        for name, stage in self.stages_for(item.type):
            try:
                candidates = await stage(item, language)
            except (httpx.HTTPError, ProviderError, ValueError) as exc:
                logger.warning("Poster stage %s failed for %s: %s", name, item.title, exc)
                continue
            for candidate in candidates:
                if await self.is_loadable(candidate):
                    logger.debug("Resolved poster for %s via %s", item.title, name)
                    return candidate
        return None

    async def is_loadable(self, url: str) -> bool:
        """Request ``url`` and accept it only if it serves an image."""

        if not url or not url.startswith(("http://", "https://")) or is_missing_poster(url):
            return False
        cached = self._image_cache.get(url)
        if cached is not None:
            return cached

        loadable = False
        try:
            async with self._semaphore:
                response = await self._client.head(url)
                if response.status_code != 200 or not self._is_image(response):
                    # Headers only; the body is never read.
                    async with self._client.stream(
                        "GET", url, headers={"Range": "bytes=0-1023"}
                    ) as response:
                        pass
            loadable = response.status_code in {200, 206} and self._is_image(response)
        except httpx.HTTPError as exc:
            logger.debug("Image check for %s failed: %s", url, exc)
        self._image_cache.set(url, loadable)
        return loadable

    @staticmethod
    def _is_image(response: httpx.Response) -> bool:
        return response.headers.get("content-type", "").lower().startswith("image/")

    async def _from_tmdb(self, item: MediaItem, language: Language) -> list[str]:
        if not self._tmdb.enabled or item.type not in {
            MediaType.MOVIE,
            MediaType.TV_SERIES,
            MediaType.SHORT_DRAMA,
        }:
            return []
        reference = item.external_ref
        if reference is None or reference.provider != "tmdb":
            kind = "movie" if item.type is MediaType.MOVIE else "tv"
            reference = await self._tmdb.find_reference(item.title, kind, item.year())
        if reference is None:
            return []
        details = await self._tmdb.get_details(reference.id, reference.kind)
        return [details.poster_url] if details and details.poster_url else []

    def _poster_domains(self, media_type: MediaType) -> tuple[str, ...]:
        return (
            *self._settings.domains_for("poster"),
            *self._settings.domains_for(domain_group_for(media_type)),
            TMDB_IMAGE_HOST,
        )

    async def _from_image_search(self, item: MediaItem, language: Language) -> list[str]:
        if not self._settings.enable_search:
            return []
        hits = await self._web_search.search(poster_query(item, language), "image")
        domains = self._poster_domains(item.type)
        return [
            hit.image
            for hit in hits
            if hit.image and _matches_any(hit.image, hit.link, domains)
        ]

    async def _from_page_images(self, item: MediaItem, language: Language) -> list[str]:
        domains = self._settings.domains_for(domain_group_for(item.type))
        pages: list[str] = []
        if item.link and _matches_any(item.link, "", domains):
            pages.append(item.link)
        if self._settings.enable_search:
            query = f"{item.title} {item.year()}".strip()
            for hit in await self._web_search.search(query, "text"):
                if hit.link and hit.link not in pages and _matches_any(hit.link, "", domains):
                    pages.append(hit.link)

        images: list[str] = []
        for page in pages[:MAX_PAGE_FETCHES]:
            async with self._semaphore:
                response = await self._client.get(page)
            if response.status_code != 200:
                continue
            image = extract_page_image(response.text, str(response.url))
            if image:
                images.append(image)
        return images

    async def _from_openlibrary(self, item: MediaItem, language: Language) -> list[str]:
        params = {"title": item.title, "limit": 1}
        if not is_missing(item.director_or_author):
            params["author"] = item.director_or_author
        async with self._semaphore:
            response = await self._client.get(OPENLIBRARY_SEARCH_URL, params=params)
        if response.status_code != 200:
            return []
        payload = response.json()
        docs = payload.get("docs") if isinstance(payload, dict) else None
        if not isinstance(docs, list) or not docs or not isinstance(docs[0], dict):
            return []
        doc = docs[0]
        if doc.get("cover_i"):
            return [f"{OPENLIBRARY_COVER_URL}/id/{doc['cover_i']}-L.jpg"]
        isbns = doc.get("isbn")
        if isinstance(isbns, list) and isbns:
            return [f"{OPENLIBRARY_COVER_URL}/isbn/{isbns[0]}-L.jpg"]
        return []

    async def _from_musicbrainz(self, item: MediaItem, language: Language) -> list[str]:
        query = f'release:"{item.title}"'
        if not is_missing(item.director_or_author):
            query += f' AND artist:"{item.director_or_author}"'
        async with self._semaphore:
            response = await self._client.get(
                MUSICBRAINZ_RELEASE_URL, params={"query": query, "fmt": "json", "limit": 1}
            )
        if response.status_code != 200:
            return []
        payload = response.json()
        releases = payload.get("releases") if isinstance(payload, dict) else None
        if not isinstance(releases, list) or not releases:
            return []
        release = releases[0]
        if not isinstance(release, dict) or not release.get("id"):
            return []
        async with self._semaphore:
            art = await self._client.get(f"{COVERART_RELEASE_URL}/{release['id']}")
        if art.status_code != 200:
            return []
        art_payload = art.json()
        images = art_payload.get("images") if isinstance(art_payload, dict) else None
        if not isinstance(images, list):
            return []
        return [
            image["image"]
            for image in images
            if isinstance(image, dict) and isinstance(image.get("image"), str)
        ][:1]

    async def _from_wikipedia(self, item: MediaItem, language: Language) -> list[str]:
        async with self._semaphore:
            response = await self._client.get(
                WIKIPEDIA_API_URL.format(language=language),
                params={
                    "action": "query",
                    "prop": "pageimages",
                    "piprop": "thumbnail|original",
                    "pithumbsize": 1024,
                    "format": "json",
                    "redirects": 1,
                    "titles": item.title,
                },
            )
        if response.status_code != 200:
            return []
        payload = response.json()
        query = payload.get("query") if isinstance(payload, dict) else None
        pages = query.get("pages") if isinstance(query, dict) else None
        if not isinstance(pages, dict):
            return []
        images: list[str] = []
        for page in pages.values():
            if not isinstance(page, dict):
                continue
            for key in ("original", "thumbnail"):
                image = page.get(key)
                source = image.get("source") if isinstance(image, dict) else None
                if isinstance(source, str) and source:
                    images.append(source)
        return images


def _matches_any(url: str, page_url: str, domains: Iterable[str]) -> bool:
    return any(
        host_matches(url, domain) or (page_url and host_matches(page_url, domain))
        for domain in domains
    )
