"""Entry point for the FastAPI-powered media search service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .database import Database
from .models import MediaItem, MediaType
from .services.bangumi import BANGUMI_API_URL, BangumiClient
from .services.enrichment import EnrichmentEngine
from .services.http import build_client
from .services.io_log import IOLog
from .services.openai import ChatCompletionClient
from .services.plugins import PluginRunner
from .services.posters import PosterResolver
from .services.result_store import ResultStore
from .services.search_service import MediaSearchService, SearchRuntime
from .services.tmdb import TMDB_API_URL, TMDBClient
from .services.web_search import WebSearchClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    settings: Settings = fastapi_app.state.settings
    exit_stack = AsyncExitStack()
    tmdb_http = await exit_stack.enter_async_context(
        build_client(settings, base_url=TMDB_API_URL)
    )
    bangumi_http = await exit_stack.enter_async_context(
        build_client(settings, base_url=BANGUMI_API_URL)
    )
    ai_http = await exit_stack.enter_async_context(
        build_client(settings, base_url=settings.ai_base_url.rstrip("/"))
    )
    web_http = await exit_stack.enter_async_context(build_client(settings))

    database = Database(settings.database_url)
    await database.create_all()

    runtime = SearchRuntime.create(settings)
    io_log = IOLog(database.session_factory)
    web_search = WebSearchClient(
        settings,
        web_http,
        semaphore=runtime.search_semaphore,
        cache=runtime.search_cache,
        status_cache=runtime.status_cache,
        notifier=runtime.quota_notifier,
        io_log=io_log,
    )
    tmdb = TMDBClient(
        settings, tmdb_http, semaphore=runtime.api_semaphore, detail_cache=runtime.detail_cache
    )
    bangumi = BangumiClient(
        settings,
        bangumi_http,
        semaphore=runtime.api_semaphore,
        detail_cache=runtime.detail_cache,
    )
    posters = PosterResolver(
        settings,
        web_http,
        web_search=web_search,
        tmdb=tmdb,
        semaphore=runtime.search_semaphore,
        image_cache=runtime.image_check_cache,
    )
    search_service = MediaSearchService(
        settings,
        web_search=web_search,
        tmdb=tmdb,
        bangumi=bangumi,
        plugins=PluginRunner(settings),
        ai=ChatCompletionClient(
            settings, ai_http, semaphore=runtime.api_semaphore, io_log=io_log
        ),
        enrichment=EnrichmentEngine(settings, tmdb=tmdb, bangumi=bangumi, posters=posters),
        result_store=ResultStore(database.session_factory, ttl=settings.result_cache_ttl),
    )

    fastapi_app.state.search_service = search_service
    fastapi_app.state.runtime = runtime
    fastapi_app.state.io_log = io_log
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await io_log.flush()
        await database.dispose()
        await exit_stack.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Media search across metadata services, web search and AI",
        version="1.0.0",
        lifespan=lifespan,
    )
    fastapi_app.state.settings = settings

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_search_service(app: FastAPI) -> MediaSearchService:
    service = getattr(app.state, "search_service", None)
    if not isinstance(service, MediaSearchService):
        raise RuntimeError("Search service not initialised")
    return service


def parse_media_type(value: str | None) -> MediaType | None:
    """Return the declared type, ``None`` for "All", or raise ``ValueError``."""

    if value is None or not value.strip() or value.strip().lower() == "all":
        return None
    for media_type in MediaType:
        if media_type.value.lower() == value.strip().lower():
            return media_type
    raise ValueError(f"Unsupported media type: {value}")


class UpdateCheckRequest(BaseModel):
    items: list[MediaItem] = Field(default_factory=list)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/search")
    async def search(
        q: str = Query(default=""),
        type: str | None = Query(default=None),
    ) -> JSONResponse:
        if not q.strip():
            raise HTTPException(status_code=400, detail="Query must not be empty")
        try:
            media_type = parse_media_type(type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        service = get_search_service(fastapi_app)
        items = await service.search_media(q, media_type)
        return JSONResponse({"results": [item.to_payload() for item in items]})

    @fastapi_app.get("/api/trending")
    async def trending() -> JSONResponse:
        service = get_search_service(fastapi_app)
        items = await service.trending()
        return JSONResponse({"results": [item.to_payload() for item in items]})

    @fastapi_app.post("/api/updates")
    async def check_updates(request: UpdateCheckRequest) -> JSONResponse:
        service = get_search_service(fastapi_app)
        statuses = await service.check_updates(request.items)
        return JSONResponse(
            {"updates": [status.model_dump(mode="json", by_alias=True) for status in statuses]}
        )

    @fastapi_app.post("/api/providers/{provider}/test")
    async def test_provider(provider: str) -> JSONResponse:
        service = get_search_service(fastapi_app)
        if provider == "search":
            status = await service.web_search.test_connection()
        elif provider == "tmdb":
            status = await service.tmdb.test_connection()
        elif provider == "bangumi":
            status = await service.bangumi.test_connection()
        else:
            raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
        return JSONResponse(status.model_dump(mode="json"))

    @fastapi_app.get("/api/logs")
    async def recent_logs(limit: int = Query(default=50, ge=1, le=200)) -> JSONResponse:
        io_log: IOLog | None = getattr(fastapi_app.state, "io_log", None)
        if io_log is None:
            raise HTTPException(status_code=503, detail="I/O log not initialised")
        entries = await io_log.recent(limit)
        return JSONResponse({"entries": [entry.model_dump(mode="json") for entry in entries]})

    @fastapi_app.get("/api/notices")
    async def quota_notices() -> dict[str, Any]:
        runtime: SearchRuntime | None = getattr(fastapi_app.state, "runtime", None)
        notices = runtime.notices if runtime is not None else []
        return {
            "notices": [
                {"provider": provider, "message": message} for provider, message in notices
            ]
        }


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    runtime_settings = get_settings()
    uvicorn.run(
        "mediatracker.main:app",
        host=runtime_settings.server_host,
        port=runtime_settings.server_port,
        reload=runtime_settings.environment == "development",
    )
