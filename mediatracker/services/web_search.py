"""Web-search adapter with interchangeable backends and a no-key fallback."""

from __future__ import annotations

import asyncio
import logging
import time
import xml.etree.ElementTree as ElementTree
from typing import Awaitable, Callable, Iterable
from urllib.parse import parse_qs, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from ..cache import ResponseCache, cache_key
from ..concurrency import FairSemaphore, QuotaNotifier, RetryPolicy
from ..config import SearchProvider, Settings
from ..errors import ProviderError, QuotaExceededError
from ..models import ConnectionStatus, IOLogEntry, ProviderResult, SearchType
from ..utils import strip_html
from .io_log import IOLog

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
SERPER_BASE_URL = "https://google.serper.dev"
YANDEX_SEARCH_URL = "https://yandex.com/search/xml"
DUCKDUCKGO_API_URL = "https://api.duckduckgo.com/"
DUCKDUCKGO_HTML_URL = "https://html.duckduckgo.com/html/"

RESULTS_PER_QUERY = 8
FALLBACK_PROVIDER: SearchProvider = "duckduckgo"

# Yandex XML error codes that signal an exhausted limit.
YANDEX_QUOTA_CODES = frozenset({"32", "55"})

Backend = Callable[[str, SearchType], Awaitable[list[ProviderResult]]]


class WebSearchClient:
    """Runs text and image searches against the configured engine.

    Every call is bounded by the search semaphore, retried on transient
    failures and memoised in the search cache. A quota error or an empty
    result falls back to DuckDuckGo for text searches.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        semaphore: FairSemaphore,
        cache: ResponseCache[list[ProviderResult]],
        status_cache: ResponseCache[ConnectionStatus],
        notifier: QuotaNotifier,
        io_log: IOLog | None = None,
        retry: RetryPolicy | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._semaphore = semaphore
        self._cache = cache
        self._status_cache = status_cache
        self._notifier = notifier
        self._io_log = io_log
        self._retry = retry or RetryPolicy.from_settings(settings)
        self._backends: dict[str, Backend] = {
            "google": self._search_google,
            "serper": self._search_serper,
            "yandex": self._search_yandex,
            "duckduckgo": self._search_duckduckgo,
        }

    @property
    def provider(self) -> SearchProvider:
        return self._settings.search_provider

    async def search(
        self, query: str, search_type: SearchType = "text"
    ) -> list[ProviderResult]:
        """Return normalised hits for ``query``; never raises for provider errors."""

        query = query.strip()
        if not query:
            return []
        key = cache_key("web", query, {"type": search_type, "provider": self.provider})
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        provider: SearchProvider = self.provider
        if provider != FALLBACK_PROVIDER and not self._has_credentials(provider):
            logger.info("%s search is missing credentials; using fallback", provider)
            if search_type == "image":
                return []
            provider = FALLBACK_PROVIDER

        results = await self._search_safely(provider, query, search_type)
        if not results and provider != FALLBACK_PROVIDER and search_type == "text":
            logger.info("No %s results for %r; falling back to %s", provider, query, FALLBACK_PROVIDER)
            results = await self._search_safely(FALLBACK_PROVIDER, query, search_type)

        if results:
            self._cache.set(key, results)
        return list(results)

    async def search_many(
        self, queries: Iterable[str], search_type: SearchType = "text"
    ) -> list[ProviderResult]:
        """Run several queries concurrently and concatenate them in query order."""

        tasks = [asyncio.create_task(self.search(query, search_type)) for query in queries]
        batches = await asyncio.gather(*tasks)
        return [result for batch in batches for result in batch]

    async def test_connection(self) -> ConnectionStatus:
        """Test the configured backend alone, without any fallback."""

        provider = self.provider
        status_key = cache_key("status", provider)
        cached = self._status_cache.get(status_key)
        if cached is not None:
            return cached

        if not self._has_credentials(provider):
            status = ConnectionStatus(ok=False, provider=provider, error="Missing credentials")
        else:
            started = time.perf_counter()
            try:
                results = await self._run(provider, "test", "text")
            except (httpx.HTTPError, ProviderError, ValueError) as exc:
                status = ConnectionStatus(ok=False, provider=provider, error=str(exc))
            else:
                status = ConnectionStatus(
                    ok=True,
                    provider=provider,
                    latency_ms=int((time.perf_counter() - started) * 1000),
                    count=len(results),
                )
        self._status_cache.set(status_key, status)
        return status

    def _has_credentials(self, provider: SearchProvider) -> bool:
        settings = self._settings
        if provider == "google":
            return bool(settings.google_api_key and settings.google_cx)
        if provider == "serper":
            return bool(settings.serper_api_key)
        if provider == "yandex":
            return bool(settings.yandex_api_key and settings.yandex_user)
        return True

    async def _search_safely(
        self, provider: SearchProvider, query: str, search_type: SearchType
    ) -> list[ProviderResult]:
        try:
            return await self._run(provider, query, search_type)
        except QuotaExceededError as exc:
            self._notifier.notify(provider, str(exc))
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("%s %s search for %r failed: %s", provider, search_type, query, exc)
        return []

    async def _run(
        self, provider: SearchProvider, query: str, search_type: SearchType
    ) -> list[ProviderResult]:
        backend = self._backends[provider]

        async def attempt() -> list[ProviderResult]:
            async with self._semaphore:
                return await backend(query, search_type)

        started = time.perf_counter()
        results: list[ProviderResult] = []
        error: str | None = None
        try:
            results = await self._retry.run(attempt, description=f"{provider} search")
            return results
        except Exception as exc:
            error = str(exc)
            raise
        finally:
            if self._io_log is not None:
                self._io_log.record(
                    IOLogEntry(
                        channel="search",
                        provider=provider,
                        query=query,
                        search_type=search_type,
                        request={"query": query, "type": search_type},
                        response={"error": error} if error else [r.to_context() for r in results],
                        duration_ms=int((time.perf_counter() - started) * 1000),
                    )
                )

    @staticmethod
    def _raise_for_status(provider: str, response: httpx.Response) -> None:
        status = response.status_code
        if status == 429:
            raise QuotaExceededError(provider, response.text[:200] or "HTTP 429")
        if status >= 400:
            body = response.text[:200]
            if "quota" in body.lower() or "credits" in body.lower():
                raise QuotaExceededError(provider, body)
            raise ProviderError(provider, f"HTTP {status}: {body}", status_code=status)

    async def _search_google(self, query: str, search_type: SearchType) -> list[ProviderResult]:
        params: dict[str, str | int] = {
            "key": self._settings.google_api_key or "",
            "cx": self._settings.google_cx or "",
            "q": query,
            "num": RESULTS_PER_QUERY,
            "safe": "off",
        }
        if search_type == "image":
            params["searchType"] = "image"
        response = await self._client.get(GOOGLE_SEARCH_URL, params=params)
        self._raise_for_status("google", response)
        payload = response.json()

        results: list[ProviderResult] = []
        for item in payload.get("items", []) or []:
            if not isinstance(item, dict):
                continue
            if search_type == "image":
                image_meta = item.get("image") or {}
                results.append(
                    ProviderResult(
                        title=item.get("title") or "",
                        link=image_meta.get("contextLink") or item.get("link") or "",
                        image=item.get("link"),
                        source="google",
                    )
                )
                continue
            pagemap = item.get("pagemap") or {}
            images = pagemap.get("cse_image") or []
            image = images[0].get("src") if images and isinstance(images[0], dict) else None
            results.append(
                ProviderResult(
                    title=item.get("title") or "",
                    snippet=item.get("snippet") or "",
                    link=item.get("link") or "",
                    image=image,
                    source="google",
                )
            )
        return results

    async def _search_serper(self, query: str, search_type: SearchType) -> list[ProviderResult]:
        endpoint = "/images" if search_type == "image" else "/search"
        response = await self._client.post(
            f"{SERPER_BASE_URL}{endpoint}",
            json={"q": query, "safe": "off", "num": RESULTS_PER_QUERY},
            headers={"X-API-KEY": self._settings.serper_api_key or ""},
        )
        self._raise_for_status("serper", response)
        payload = response.json()

        if search_type == "image":
            return [
                ProviderResult(
                    title=item.get("title") or "",
                    link=item.get("link") or "",
                    image=item.get("imageUrl"),
                    source="serper",
                )
                for item in payload.get("images", []) or []
                if isinstance(item, dict) and item.get("imageUrl")
            ]
        return [
            ProviderResult(
                title=item.get("title") or "",
                snippet=item.get("snippet") or "",
                link=item.get("link") or "",
                image=item.get("imageUrl"),
                source="serper",
            )
            for item in payload.get("organic", []) or []
            if isinstance(item, dict)
        ]

    async def _search_yandex(self, query: str, search_type: SearchType) -> list[ProviderResult]:
        if search_type == "image":
            return []
        params = {
            "user": self._settings.yandex_user or "",
            "key": self._settings.yandex_api_key or "",
            "query": query,
            "l10n": self._settings.language,
            "filter": "none",
            "maxpassages": "2",
            "groupby": f"attr=.mode=flat.groups-on-page={RESULTS_PER_QUERY}.docs-in-group=1",
        }
        response = await self._client.get(YANDEX_SEARCH_URL, params=params)
        self._raise_for_status("yandex", response)
        return parse_yandex_xml(response.text)

    async def _search_duckduckgo(
        self, query: str, search_type: SearchType
    ) -> list[ProviderResult]:
        if search_type == "image":
            return []
        results: list[ProviderResult] = []
        if "site:" not in query:
            response = await self._client.get(
                DUCKDUCKGO_API_URL,
                params={"q": query, "format": "json", "no_html": 1, "skip_disambig": 1},
            )
            self._raise_for_status("duckduckgo", response)
            results = parse_duckduckgo_answer(response.json())
        if results:
            return results[:RESULTS_PER_QUERY]

        response = await self._client.post(DUCKDUCKGO_HTML_URL, data={"q": query})
        self._raise_for_status("duckduckgo", response)
        return parse_duckduckgo_html(response.text)[:RESULTS_PER_QUERY]


def parse_yandex_xml(document: str) -> list[ProviderResult]:
    """Parse a Yandex XML search response into hits."""

    try:
        root = ElementTree.fromstring(document)
    except ElementTree.ParseError as exc:
        raise ValueError(f"Malformed Yandex XML: {exc}") from exc

    error = root.find(".//error")
    if error is not None:
        code = error.get("code", "")
        message = "".join(error.itertext()).strip() or f"error {code}"
        if code in YANDEX_QUOTA_CODES:
            raise QuotaExceededError("yandex", message)
        if code == "15":
            # "No results found" is reported as an error.
            return []
        raise ProviderError("yandex", message)

    results: list[ProviderResult] = []
    for doc in root.iter("doc"):
        url = (doc.findtext("url") or "").strip()
        title_node = doc.find("title")
        title = " ".join("".join(title_node.itertext()).split()) if title_node is not None else ""
        passages = [
            " ".join("".join(passage.itertext()).split())
            for passage in doc.iter("passage")
        ]
        if not url or not title:
            continue
        results.append(
            ProviderResult(title=title, snippet=" ".join(passages), link=url, source="yandex")
        )
    return results


def parse_duckduckgo_answer(payload: object) -> list[ProviderResult]:
    """Convert an Instant Answer payload into hits."""

    if not isinstance(payload, dict):
        return []
    results: list[ProviderResult] = []
    abstract = payload.get("AbstractText") or ""
    abstract_url = payload.get("AbstractURL") or ""
    if abstract and abstract_url:
        results.append(
            ProviderResult(
                title=payload.get("Heading") or abstract[:80],
                snippet=abstract,
                link=abstract_url,
                image=_absolute_ddg_url(payload.get("Image") or ""),
                source="duckduckgo",
            )
        )

    def _walk(topics: object) -> None:
        if not isinstance(topics, list):
            return
        for topic in topics:
            if not isinstance(topic, dict):
                continue
            if "Topics" in topic:
                _walk(topic.get("Topics"))
                continue
            text = topic.get("Text") or ""
            link = topic.get("FirstURL") or ""
            if not text or not link:
                continue
            icon = topic.get("Icon") or {}
            results.append(
                ProviderResult(
                    title=text.split(" - ")[0],
                    snippet=text,
                    link=link,
                    image=_absolute_ddg_url(icon.get("URL") or "") if isinstance(icon, dict) else None,
                    source="duckduckgo",
                )
            )

    _walk(payload.get("RelatedTopics"))
    return results


def parse_duckduckgo_html(html: str) -> list[ProviderResult]:
    """Scrape the DuckDuckGo HTML endpoint's result blocks."""

    soup = BeautifulSoup(html, "html.parser")
    results: list[ProviderResult] = []
    for block in soup.select(".result"):
        anchor = block.select_one("a.result__a")
        if anchor is None:
            continue
        link = _unwrap_ddg_redirect(anchor.get("href") or "")
        title = strip_html(anchor.get_text(" ", strip=True))
        snippet_node = block.select_one(".result__snippet")
        snippet = snippet_node.get_text(" ", strip=True) if snippet_node is not None else ""
        if not link or not title:
            continue
        results.append(ProviderResult(title=title, snippet=snippet, link=link, source="duckduckgo"))
    return results


def _unwrap_ddg_redirect(href: str) -> str:
    if href.startswith("//"):
        href = "https:" + href
    parsed = urlparse(href)
    if parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
    return href


def _absolute_ddg_url(url: str) -> str | None:
    if not url:
        return None
    return urljoin("https://duckduckgo.com", url)
