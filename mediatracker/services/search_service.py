"""Top-level media search: fan out to every source, merge, enrich and cache."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Sequence

import httpx
from pydantic import ValidationError

from ..cache import ResponseCache
from ..classifier import Language, has_negative_keyword
from ..concurrency import FairSemaphore, QuotaNotifier
from ..config import Settings
from ..errors import ProviderError
from ..merge import TRUST_HEURISTIC, merge_all
from ..models import MediaItem, MediaType, ProviderResult, UpdateStatus
from ..query_planner import QueryPlan, build_query_plan
from ..scoring import rank_results
from ..utils import extract_json_array
from .bangumi import SUBJECT_FOR_MEDIA_TYPE, BangumiClient
from .enrichment import EnrichmentEngine
from .openai import ChatCompletionClient, ToolCall
from .plugins import PluginRunner
from .result_store import ResultStore
from .tmdb import TMDBClient
from .web_search import WebSearchClient

logger = logging.getLogger(__name__)

MAX_TOOL_TURNS = 2
RESULT_CACHE_PREFIX = "media_tracker_search"
TRENDING_CACHE_PREFIX = "media_tracker_trending"
TRENDING_COUNT = 4

ALLOWED_AI_TYPES = frozenset(media_type for media_type in MediaType if media_type is not MediaType.OTHER)

WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": (
            "Search the internet for real-time information. Use this to get the latest "
            "media releases, news, and updates."
        ),
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "The search query"}},
            "required": ["query"],
        },
    },
}

JSON_ONLY_SUFFIX: dict[Language, str] = {
    "en": " Please return strictly valid JSON. Do not use markdown code blocks. Return ONLY a JSON array.",
    "zh": " 请务必使用JSON格式返回。不要使用Markdown代码块。只返回JSON数组。",
}


@dataclass
class SearchRuntime:
    """Shared limiters and caches, created once per application lifespan."""

    settings: Settings
    api_semaphore: FairSemaphore
    search_semaphore: FairSemaphore
    search_cache: ResponseCache[list[ProviderResult]]
    status_cache: ResponseCache[Any]
    image_check_cache: ResponseCache[bool]
    detail_cache: ResponseCache[Any]
    quota_notifier: QuotaNotifier
    notices: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        settings: Settings,
        *,
        quota_callback: Callable[[str, str], None] | None = None,
    ) -> "SearchRuntime":
        notices: list[tuple[str, str]] = []

        def _record_notice(provider: str, message: str) -> None:
            notices.append((provider, message))
            if quota_callback is not None:
                quota_callback(provider, message)

        return cls(
            settings=settings,
            api_semaphore=FairSemaphore(settings.api_concurrency),
            search_semaphore=FairSemaphore(settings.search_concurrency),
            search_cache=ResponseCache(settings.search_cache_ttl, name="search"),
            status_cache=ResponseCache(settings.status_cache_ttl, name="status"),
            image_check_cache=ResponseCache(settings.search_cache_ttl, name="image-check"),
            detail_cache=ResponseCache(settings.detail_cache_ttl, name="details"),
            quota_notifier=QuotaNotifier(settings.quota_notice_window, _record_notice),
            notices=notices,
        )


def result_cache_key(language: str, media_type: MediaType | None, query: str) -> str:
    type_label = media_type.value if media_type else "All"
    return f"{RESULT_CACHE_PREFIX}_{language}_{type_label}_{query.strip().lower()}"


def context_json(items: Sequence[MediaItem]) -> str:
    """Serialise web-derived records as grounding context for the model."""

    return json.dumps(
        [
            {
                "title": item.title,
                "snippet": item.description,
                "link": item.link,
                "year": item.year(),
                "type": item.type.value,
                **({"image": item.poster_url} if item.poster_url else {}),
            }
            for item in items
        ],
        ensure_ascii=False,
    )


def build_messages(
    query: str,
    media_type: MediaType | None,
    context: str,
    *,
    language: Language,
    system_prompt: str,
) -> list[dict[str, str]]:
    """Return the system and user messages for one media search."""

    if language == "zh":
        prompt = f'搜索符合以下查询的媒体作品: "{query}"。'
        if media_type:
            prompt += f' 严格限制结果类型为: "{media_type.value}"。'
        else:
            prompt += " (包括书籍、电影、电视剧、漫画、短剧)"
        prompt += (
            "\n[限制] 仅返回作品（小说、电影、电视剧、短剧、漫画、音乐专辑）。"
            "严禁返回新闻、产品评测、对比、参数、价格、手机/电子产品相关条目。"
            "\n[优先] 使用联网搜索工具 (web_search) 获取最新信息；如网络不可用，"
            f"请基于以下候选搜索结果或已有知识返回有效 JSON：\n{context}\n"
            "仅从可靠信息中选择并返回有效 JSON 数组。若无匹配请返回空数组。"
        )
    else:
        prompt = f'Search for media works matching the query: "{query}".'
        if media_type:
            prompt += f' Strictly limit results to type: "{media_type.value}".'
        else:
            prompt += " (books, movies, TV series, comics, short dramas)"
        prompt += (
            "\n[Constraint] Only return works (novels, movies, TV series, short dramas, "
            "comics, music albums). Do NOT include news, product reviews, comparisons, "
            "specs, prices, or phone/electronics items."
            "\n[PREFER] Use the web search tool; if unavailable, rely on the following "
            f"candidate search results or internal knowledge:\n{context}\n"
            "Return ONLY a valid JSON array. If nothing matches, return an empty array."
        )
    prompt += f"\nToday: {date.today().isoformat()}."
    return [
        {"role": "system", "content": system_prompt + JSON_ONLY_SUFFIX[language]},
        {"role": "user", "content": prompt},
    ]


def parse_ai_items(content: str) -> list[MediaItem]:
    """Turn the model's JSON reply into low-trust records, dropping non-media entries."""

    if not content.strip():
        return []
    try:
        entries = extract_json_array(content)
    except ValueError as exc:
        logger.warning("AI returned an unusable response: %s", exc)
        return []

    items: list[MediaItem] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        payload = {key: value for key, value in entry.items() if key != "id"}
        try:
            item = MediaItem.model_validate(payload)
        except ValidationError:
            logger.debug("Skipping malformed AI item: %s", entry)
            continue
        if item.type not in ALLOWED_AI_TYPES:
            continue
        if has_negative_keyword(f"{item.title} {item.description}"):
            continue
        item.sources = ["ai"]
        items.append(item.mark_trust(TRUST_HEURISTIC))
    return items


def trending_queries(language: Language, today: date) -> tuple[str, str]:
    """Web queries used as grounding for the trending list, most specific first."""

    if language == "zh":
        month = f"{today.year}年{today.month}月"
        return f"最新上映电影电视剧排行榜 {month}", f"最近热门影视作品推荐 {today.year}"
    month = today.strftime("%B %Y")
    return f"new movie releases {month}", f"best new tv shows {month}"


def build_trending_messages(
    context: str,
    *,
    language: Language,
    system_prompt: str,
    today: date,
    custom_prompt: str = "",
) -> list[dict[str, str]]:
    """Return the messages asking the model for recent popular releases."""

    if language == "zh":
        month = f"{today.year}年{today.month}月"
        if custom_prompt:
            prompt = (
                f"{custom_prompt}\n\n[系统提示] 当前日期: {today.isoformat()}。"
                "请优先使用提供的联网搜索工具 (web_search) 获取最新信息。"
            )
        else:
            prompt = (
                f"今天是 {today.isoformat()}。请推荐{TRENDING_COUNT}部在最近2个月内更新或上映的"
                "热门电影、电视剧或动漫。\n"
            )
            if context:
                prompt += f"[重要] 参考以下实时搜索结果进行推荐：\n{context}\n"
            else:
                prompt += (
                    "[重要] 请务必使用联网搜索工具 (web_search) 获取 "
                    f'"最新热门电影电视剧 {month}" 的信息。\n'
                )
            prompt += (
                "要求：\n1. 必须是最近2个月内有更新或上映的作品。\n"
                "2. 严禁推荐几年前的老片，除非它最近有新季度更新。\n"
                "3. releaseDate 必须准确；电视剧请填写最新一季的首播日期。\n"
                '4. latestUpdateInfo 必须准确（例如 "第2季 第5集" 或 "已完结"）。\n'
                "5. 不要捏造未来的日期；日期不确定时请只填写年份。"
            )
    else:
        month = today.strftime("%B %Y")
        if custom_prompt:
            prompt = (
                f"{custom_prompt}\n\n[System Note] Today's Date: {today.isoformat()}. "
                "Prefer using the provided 'web_search' tool to fetch the latest information."
            )
        else:
            prompt = (
                f"Today is {today.isoformat()}. Recommend {TRENDING_COUNT} trending movies, "
                "TV series, or dramas that have been updated or released within the last "
                "2 months.\n"
            )
            if context:
                prompt += f"[IMPORTANT] Refer to the following search results (real-time data):\n{context}\n"
            else:
                prompt += (
                    "[IMPORTANT] You MUST use the provided web search tool (web_search). "
                    f'Search query: "trending movies tv series {month}".\n'
                )
            prompt += (
                "Requirements:\n1. Must be updated or released within the last 2 months.\n"
                "2. Do NOT recommend old content unless it has a very recent new season.\n"
                "3. releaseDate MUST be accurate. For TV series, use the premiere date of "
                "the latest season.\n"
                '4. latestUpdateInfo must be accurate (e.g. "Season 2 Episode 5" or "Ended").\n'
                "5. Do not invent future dates; if unsure, give only the year."
            )
    prompt += (
        "\n\nIMPORTANT: ALWAYS return a valid JSON array, even if empty or with fewer "
        "items. Do NOT return markdown text or explanations outside the JSON."
    )
    return [
        {"role": "system", "content": system_prompt + JSON_ONLY_SUFFIX[language]},
        {"role": "user", "content": prompt},
    ]


def build_update_messages(
    items: Sequence[MediaItem], *, language: Language
) -> list[dict[str, str]]:
    """Return the messages asking for the latest episode or chapter of ``items``."""

    listing = ", ".join(f'"{item.title}" ({item.type.value})' for item in items)
    if language == "zh":
        system = "你是一个媒体更新追踪助手。仅返回原始JSON数组。不要使用Markdown。"
        prompt = (
            f"请提供以下作品的最新更新状态: {listing}。\n"
            "请提供截至今天的最新一集/一章信息。\n"
            "返回一个包含以下对象的JSON数组:\n"
            "- title: 字符串 (完全匹配)\n"
            '- latestUpdateInfo: 字符串 (例如 "第4季 第8集" 或 "第1052章")\n'
            "- isOngoing: 布尔值 (如果仍在更新则为 true)"
        )
    else:
        system = "You are a media update tracker. Return ONLY raw JSON array. No markdown."
        prompt = (
            f"Please check the latest status for: {listing}.\n"
            "Provide the absolute latest episode/chapter as of today.\n"
            "Return a JSON array with objects containing:\n"
            "- title: string (exact match)\n"
            '- latestUpdateInfo: string (e.g. "Season 4 Episode 8" or "Chapter 1052")\n'
            "- isOngoing: boolean (true if still updating)"
        )
    return [{"role": "system", "content": system}, {"role": "user", "content": prompt}]


def parse_update_statuses(content: str, items: Sequence[MediaItem]) -> list[UpdateStatus]:
    """Map the model's reply back onto ``items`` by exact, case-insensitive title."""

    if not content.strip():
        return []
    try:
        entries = extract_json_array(content)
    except ValueError as exc:
        logger.warning("AI returned an unusable update response: %s", exc)
        return []

    ids = {item.title.strip().lower(): item.id for item in items}
    statuses: list[UpdateStatus] = []
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("title"), str):
            continue
        item_id = ids.get(entry["title"].strip().lower())
        if item_id is None:
            continue
        try:
            statuses.append(UpdateStatus.model_validate({**entry, "id": item_id}))
        except ValidationError:
            logger.debug("Skipping malformed update entry: %s", entry)
    return statuses


class MediaSearchService:
    """Runs one media search end to end.

    Results are read from and written to the persistent result store; on a
    miss metadata services, plugins and web context are queried concurrently,
    the model is asked once (with the ``web_search`` tool available), all
    families are merged by priority, enriched and cached.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        web_search: WebSearchClient,
        tmdb: TMDBClient,
        bangumi: BangumiClient,
        plugins: PluginRunner,
        ai: ChatCompletionClient,
        enrichment: EnrichmentEngine,
        result_store: ResultStore | None = None,
    ):
        self._settings = settings
        self._web_search = web_search
        self._tmdb = tmdb
        self._bangumi = bangumi
        self._plugins = plugins
        self._ai = ai
        self._enrichment = enrichment
        self._result_store = result_store

    @property
    def web_search(self) -> WebSearchClient:
        return self._web_search

    @property
    def tmdb(self) -> TMDBClient:
        return self._tmdb

    @property
    def bangumi(self) -> BangumiClient:
        return self._bangumi

    async def search_media(
        self, query: str, media_type: MediaType | None = None
    ) -> list[MediaItem]:
        """Return merged, enriched records for ``query``; never raises."""

        try:
            return await self._search_media(query, media_type)
        except Exception:
            logger.exception("Media search for %r failed", query)
            return []

    async def _search_media(
        self, query: str, media_type: MediaType | None
    ) -> list[MediaItem]:
        raw = " ".join(query.split())
        if not raw:
            return []

        key = result_cache_key(self._settings.language, media_type, raw)
        if self._result_store is not None:
            cached = await self._result_store.get_items(key)
            if cached is not None:
                logger.info("Serving cached results for %r", raw)
                return cached

        plan = build_query_plan(raw, media_type, self._settings)
        plugin_items, tmdb_items, bangumi_items, context_items = await self._fan_out(
            (
                ("plugin", self._plugins.search(raw)),
                ("tmdb", self._search_tmdb(raw, media_type)),
                ("bangumi", self._search_bangumi(raw, media_type)),
                ("context", self._web_pipeline(plan, media_type)),
            )
        )
        ai_items = await self._ask_ai(raw, media_type, plan, context_items)

        families = {
            "plugin": plugin_items,
            "tmdb": tmdb_items,
            "bangumi": bangumi_items,
            "ai": ai_items,
        }
        merged = merge_all(families[family] for family in self._settings.merge_priority)
        if media_type is not None:
            merged = [
                item
                for item in merged
                if item.type is media_type or item.type is MediaType.OTHER
            ]
        if not merged and context_items:
            logger.info("No source produced results for %r; using web context", raw)
            merged = list(context_items)

        await self._enrichment.enrich(merged, plan.language)
        for item in merged:
            item.ensure_poster()

        if merged and self._result_store is not None:
            await self._result_store.set_items(key, merged)
        return merged

    async def _fan_out(
        self, tasks: Sequence[tuple[str, Awaitable[list[MediaItem]]]]
    ) -> list[list[MediaItem]]:
        results = await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)
        outputs: list[list[MediaItem]] = []
        for (name, _), result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.error("%s search failed", name, exc_info=result)
                outputs.append([])
            else:
                outputs.append(result)
        return outputs

    async def _search_tmdb(self, query: str, media_type: MediaType | None) -> list[MediaItem]:
        if media_type is None:
            kind = "multi"
        elif media_type is MediaType.MOVIE:
            kind = "movie"
        elif media_type in {MediaType.TV_SERIES, MediaType.SHORT_DRAMA}:
            kind = "tv"
        else:
            return []
        items = await self._tmdb.search(query, kind)
        return items[: self._settings.max_results]

    async def _search_bangumi(
        self, query: str, media_type: MediaType | None
    ) -> list[MediaItem]:
        subject_type = SUBJECT_FOR_MEDIA_TYPE.get(media_type) if media_type else None
        items = await self._bangumi.search(query, subject_type, as_type=media_type)
        return items[: self._settings.max_results]

    async def _web_pipeline(
        self, plan: QueryPlan, media_type: MediaType | None
    ) -> list[MediaItem]:
        """Planner, web adapter and scorer, as used for context and the tool."""

        if not self._settings.enable_search:
            return []
        hits = await self._web_search.search_many(plan.queries)
        return rank_results(
            hits,
            plan,
            unconstrained=media_type is None,
            limit=self._settings.max_results,
        )

    async def _ask_ai(
        self,
        query: str,
        media_type: MediaType | None,
        plan: QueryPlan,
        context_items: Sequence[MediaItem],
    ) -> list[MediaItem]:
        if not self._ai.enabled:
            return []
        messages: list[dict[str, Any]] = build_messages(
            query,
            media_type,
            context_json(context_items),
            language=plan.language,
            system_prompt=self._settings.system_prompt,
        )
        try:
            content = await self._converse(messages, media_type, label=f"AI search for {query!r}")
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("AI search for %r failed: %s", query, exc)
            return []
        return parse_ai_items(content)

    async def _converse(
        self,
        messages: list[dict[str, Any]],
        media_type: MediaType | None,
        *,
        label: str,
    ) -> str:
        """Run the tool loop and return the final reply, or "" if it never settles."""

        tools = [WEB_SEARCH_TOOL] if self._settings.enable_search else None
        for _ in range(MAX_TOOL_TURNS):
            reply = await self._ai.complete(
                messages, temperature=self._settings.ai_temperature, tools=tools
            )
            if not reply.tool_calls:
                return reply.content
            messages.append(reply.to_message())
            for call in reply.tool_calls:
                messages.append(await self._run_tool(call, media_type))
        logger.warning("%s exceeded %s tool turns", label, MAX_TOOL_TURNS)
        return ""

    async def trending(self, today: date | None = None) -> list[MediaItem]:
        """Return recently released popular works; never raises."""

        try:
            return await self._trending(today or date.today())
        except Exception:
            logger.exception("Trending lookup failed")
            return []

    async def _trending(self, today: date) -> list[MediaItem]:
        language = self._settings.language
        key = f"{TRENDING_CACHE_PREFIX}_{language}_{today.isoformat()}"
        if self._result_store is not None:
            cached = await self._result_store.get_items(key)
            if cached is not None:
                logger.info("Serving cached trending list for %s", today)
                return cached

        custom_prompt = self._settings.trending_prompt.strip()
        context_items: list[MediaItem] = []
        if not custom_prompt:
            for query in trending_queries(language, today):
                plan = build_query_plan(query, None, self._settings)
                try:
                    context_items = await self._web_pipeline(plan, None)
                except (httpx.HTTPError, ProviderError) as exc:
                    logger.warning("Trending context search failed: %s", exc)
                if context_items:
                    break

        items: list[MediaItem] = []
        if self._ai.enabled:
            messages: list[dict[str, Any]] = build_trending_messages(
                context_json(context_items),
                language=language,
                system_prompt=self._settings.system_prompt,
                today=today,
                custom_prompt=custom_prompt,
            )
            try:
                content = await self._converse(messages, None, label="Trending lookup")
            except (httpx.HTTPError, ProviderError, ValueError) as exc:
                logger.warning("Trending lookup failed: %s", exc)
                content = ""
            items = parse_ai_items(content)[:TRENDING_COUNT]
        if not items and context_items:
            logger.info("AI produced no trending list; using web context")
            items = list(context_items[:TRENDING_COUNT])

        await self._enrichment.enrich(items, language)
        for item in items:
            item.ensure_poster()
        if items and self._result_store is not None:
            await self._result_store.set_items(key, items)
        return items

    async def check_updates(self, items: Sequence[MediaItem]) -> list[UpdateStatus]:
        """Ask the model for the latest episode or chapter of ``items``; never raises."""

        if not items or not self._ai.enabled:
            return []
        messages = build_update_messages(items, language=self._settings.language)
        try:
            reply = await self._ai.complete(messages, temperature=self._settings.ai_temperature)
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("Update check for %s records failed: %s", len(items), exc)
            return []
        return parse_update_statuses(reply.content, items)

    async def _run_tool(self, call: ToolCall, media_type: MediaType | None) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "tool", "tool_call_id": call.id}
        if call.name == "$web_search":
            # Provider-side search; the arguments are echoed back unchanged.
            message.update(name="$web_search", content=call.arguments)
            return message
        if call.name != "web_search":
            message["content"] = f"Error: Unknown tool {call.name}."
            return message

        try:
            arguments = json.loads(call.arguments or "{}")
        except ValueError:
            arguments = {}
        tool_query = arguments.get("query") if isinstance(arguments, dict) else None
        if not isinstance(tool_query, str) or not tool_query.strip():
            message["content"] = "Error: Missing query parameter."
            return message

        plan = build_query_plan(tool_query, media_type, self._settings)
        items = await self._web_pipeline(plan, media_type)
        message["content"] = context_json(items) if items else "No relevant results found."
        return message
