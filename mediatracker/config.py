"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal, Mapping
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

SearchProvider = Literal["google", "serper", "yandex", "duckduckgo"]

SOURCE_FAMILIES: tuple[str, ...] = ("plugin", "tmdb", "bangumi", "ai")

DOMAIN_GROUPS: tuple[str, ...] = ("movie_tv", "book", "comic", "music", "poster")

DEFAULT_AUTHORITATIVE_DOMAINS: dict[str, list[str]] = {
    "movie_tv": [
        "imdb.com",
        "themoviedb.org",
        "tvmaze.com",
        "wikipedia.org",
        "zh.wikipedia.org",
        "douban.com",
    ],
    "book": ["goodreads.com", "wikipedia.org", "zh.wikipedia.org", "douban.com"],
    "comic": ["bgm.tv", "bangumi.tv", "wikipedia.org", "zh.wikipedia.org"],
    "music": ["discogs.com", "musicbrainz.org", "wikipedia.org", "zh.wikipedia.org"],
    "poster": ["moviepostersgallery.com", "impawards.com", "goldposter.com"],
}

DEFAULT_SYSTEM_PROMPT = (
    "You are a media search assistant. Return a JSON array of media works. Each item "
    "has: title, type (one of Book, Movie, TV Series, Comic, Short Drama, Music), "
    "directorOrAuthor, description, releaseDate (YYYY-MM-DD when known), cast "
    "(up to 5 names), rating, isOngoing and latestUpdateInfo."
)


def normalize_domain(value: str) -> str:
    """Reduce a user supplied domain, URL or ``site:`` filter to a bare host."""

    raw = value.strip()
    if raw.lower().startswith("site:"):
        raw = raw[5:].strip()
    if not raw:
        return ""
    domain = raw.lower()
    if "://" in domain:
        domain = (urlparse(domain).hostname or "").lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return domain.split("/")[0].strip()


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="MediaTracker", alias="APP_NAME")
    server_host: str = Field(default="127.0.0.1", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./mediatracker.db", alias="DATABASE_URL"
    )
    language: Literal["en", "zh"] = Field(default="en", alias="LANGUAGE")

    ai_api_key: str | None = Field(default=None, alias="AI_API_KEY")
    ai_base_url: str = Field(default="https://api.moonshot.cn/v1", alias="AI_BASE_URL")
    ai_model: str = Field(default="kimi-latest", alias="AI_MODEL")
    ai_temperature: float = Field(default=0.1, alias="AI_TEMPERATURE", ge=0.0, le=2.0)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="SYSTEM_PROMPT")
    trending_prompt: str = Field(default="", alias="TRENDING_PROMPT")
    enable_search: bool = Field(default=True, alias="ENABLE_SEARCH")

    search_provider: SearchProvider = Field(
        default="duckduckgo", alias="SEARCH_PROVIDER"
    )
    google_api_key: str | None = Field(default=None, alias="GOOGLE_API_KEY")
    google_cx: str | None = Field(default=None, alias="GOOGLE_CX")
    serper_api_key: str | None = Field(default=None, alias="SERPER_API_KEY")
    yandex_api_key: str | None = Field(default=None, alias="YANDEX_API_KEY")
    yandex_user: str | None = Field(default=None, alias="YANDEX_USER")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    enable_tmdb: bool = Field(default=True, alias="ENABLE_TMDB")
    bangumi_token: str | None = Field(default=None, alias="BANGUMI_TOKEN")
    enable_bangumi: bool = Field(default=True, alias="ENABLE_BANGUMI")

    proxy_url: str | None = Field(default=None, alias="PROXY_URL")
    use_system_proxy: bool = Field(default=True, alias="USE_SYSTEM_PROXY")

    authoritative_domains: dict[str, list[str]] = Field(
        default_factory=lambda: {
            group: list(domains)
            for group, domains in DEFAULT_AUTHORITATIVE_DOMAINS.items()
        },
        alias="AUTHORITATIVE_DOMAINS",
    )

    api_concurrency: int = Field(default=2, alias="API_CONCURRENCY", ge=1, le=16)
    search_concurrency: int = Field(default=4, alias="SEARCH_CONCURRENCY", ge=1, le=32)
    enrichment_workers: int = Field(default=3, alias="ENRICHMENT_WORKERS", ge=1, le=3)
    enrichment_timeout: float = Field(
        default=8.0, alias="ENRICHMENT_TIMEOUT", gt=0, lt=10
    )
    request_timeout: float = Field(default=12.0, alias="REQUEST_TIMEOUT", ge=1, le=60)
    retry_attempts: int = Field(default=3, alias="RETRY_ATTEMPTS", ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY", ge=0)
    max_precision_queries: int = Field(
        default=3, alias="MAX_PRECISION_QUERIES", ge=0, le=3
    )
    max_results: int = Field(default=8, alias="MAX_RESULTS", ge=1, le=50)

    search_cache_ttl: float = Field(default=7_200, alias="SEARCH_CACHE_TTL", gt=0)
    status_cache_ttl: float = Field(default=60, alias="STATUS_CACHE_TTL", gt=0)
    detail_cache_ttl: float = Field(default=604_800, alias="DETAIL_CACHE_TTL", gt=0)
    result_cache_ttl: float = Field(default=7_200, alias="RESULT_CACHE_TTL", gt=0)
    quota_notice_window: float = Field(default=60, alias="QUOTA_NOTICE_WINDOW", gt=0)

    plugin_dir: str | None = Field(default=None, alias="PLUGIN_DIR")
    plugin_timeout: float = Field(default=10.0, alias="PLUGIN_TIMEOUT", gt=0, le=60)
    disabled_plugins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), alias="DISABLED_PLUGINS"
    )

    merge_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=SOURCE_FAMILIES, alias="MERGE_PRIORITY"
    )

    @field_validator(
        "ai_api_key",
        "google_api_key",
        "google_cx",
        "serper_api_key",
        "yandex_api_key",
        "yandex_user",
        "tmdb_api_key",
        "bangumi_token",
        "proxy_url",
        "plugin_dir",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        """Treat blank strings and JS-style null markers as unset."""

        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or stripped.lower() in {"undefined", "null"}:
                return None
            return stripped
        return value

    @field_validator("authoritative_domains", mode="before")
    @classmethod
    def _parse_domains(cls, value: object) -> dict[str, list[str]]:
        """Normalise configured domain groups, keeping defaults for omitted ones."""

        if value is None:
            value = {}
        if not isinstance(value, Mapping):
            raise TypeError("AUTHORITATIVE_DOMAINS must be a mapping of group to domains")

        parsed: dict[str, list[str]] = {
            group: list(domains)
            for group, domains in DEFAULT_AUTHORITATIVE_DOMAINS.items()
        }
        for group, raw_domains in value.items():
            if group not in DOMAIN_GROUPS:
                raise ValueError(f"Unknown authoritative domain group: {group}")
            if isinstance(raw_domains, str):
                raw_domains = raw_domains.split(",")
            cleaned: list[str] = []
            for entry in raw_domains or []:
                domain = normalize_domain(str(entry))
                if domain and domain not in cleaned:
                    cleaned.append(domain)
            parsed[group] = cleaned
        return parsed

    @field_validator("disabled_plugins", mode="before")
    @classmethod
    def _parse_plugin_names(cls, value: object) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        if isinstance(value, Iterable):
            return tuple(str(part).strip() for part in value if str(part).strip())
        raise TypeError("DISABLED_PLUGINS must be a string or iterable of strings")

    @field_validator("merge_priority", mode="before")
    @classmethod
    def _parse_merge_priority(cls, value: object) -> tuple[str, ...]:
        """Order source families, appending any the configuration left out."""

        if value is None:
            return SOURCE_FAMILIES
        if isinstance(value, str):
            raw_values = [part.strip().lower() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip().lower() for part in value]
        else:
            raise TypeError("MERGE_PRIORITY must be a string or iterable of strings")

        ordered: list[str] = []
        for entry in raw_values:
            if not entry:
                continue
            if entry not in SOURCE_FAMILIES:
                raise ValueError("Unknown source family in MERGE_PRIORITY")
            if entry not in ordered:
                ordered.append(entry)
        for family in SOURCE_FAMILIES:
            if family not in ordered:
                ordered.append(family)
        return tuple(ordered)

    @property
    def has_ai(self) -> bool:
        return bool(self.ai_api_key)

    def domains_for(self, group: str) -> tuple[str, ...]:
        """Return the authoritative domains configured for ``group``."""

        return tuple(self.authoritative_domains.get(group, ()))

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]
