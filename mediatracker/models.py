"""Pydantic models describing media records and provider payloads."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
)

from .utils import placeholder_poster

SearchType = Literal["text", "image"]


class MediaType(str, Enum):
    """Kinds of media work the tracker knows about."""

    BOOK = "Book"
    MOVIE = "Movie"
    TV_SERIES = "TV Series"
    COMIC = "Comic"
    SHORT_DRAMA = "Short Drama"
    MUSIC = "Music"
    OTHER = "Other"

    @classmethod
    def coerce(cls, value: object) -> "MediaType":
        """Map the loose type labels models and plugins produce onto the enum."""

        if isinstance(value, MediaType):
            return value
        text = str(value or "").strip()
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        return _TYPE_ALIASES.get(text.lower(), cls.OTHER)


_TYPE_ALIASES: dict[str, MediaType] = {
    "movie": MediaType.MOVIE,
    "film": MediaType.MOVIE,
    "电影": MediaType.MOVIE,
    "tv": MediaType.TV_SERIES,
    "tv show": MediaType.TV_SERIES,
    "series": MediaType.TV_SERIES,
    "tv_series": MediaType.TV_SERIES,
    "anime": MediaType.TV_SERIES,
    "电视剧": MediaType.TV_SERIES,
    "剧集": MediaType.TV_SERIES,
    "动画": MediaType.TV_SERIES,
    "book": MediaType.BOOK,
    "novel": MediaType.BOOK,
    "书籍": MediaType.BOOK,
    "小说": MediaType.BOOK,
    "comic": MediaType.COMIC,
    "manga": MediaType.COMIC,
    "漫画": MediaType.COMIC,
    "short drama": MediaType.SHORT_DRAMA,
    "short_drama": MediaType.SHORT_DRAMA,
    "短剧": MediaType.SHORT_DRAMA,
    "music": MediaType.MUSIC,
    "album": MediaType.MUSIC,
    "音乐": MediaType.MUSIC,
    "专辑": MediaType.MUSIC,
}

# Fields whose provenance matters when two records are merged.
TRUSTED_FIELDS: tuple[str, ...] = ("type", "description", "release_date")


class ExternalRef(BaseModel):
    """Identifier of a record in a metadata service."""

    provider: Literal["tmdb", "bangumi"]
    id: int
    kind: str = Field(
        description="TMDB media kind (movie/tv) or Bangumi subject type code."
    )


class MediaItem(BaseModel):
    """Canonical record describing one real-world media work."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = Field(validation_alias=AliasChoices("title", "name"))
    type: MediaType = MediaType.OTHER
    release_date: str = Field(
        default="",
        validation_alias=AliasChoices("releaseDate", "release_date", "year"),
        serialization_alias="releaseDate",
    )
    director_or_author: str = Field(
        default="",
        validation_alias=AliasChoices("directorOrAuthor", "director_or_author"),
        serialization_alias="directorOrAuthor",
    )
    description: str = ""
    cast: list[str] = Field(default_factory=list)
    rating: str = ""
    poster_url: str = Field(
        default="",
        validation_alias=AliasChoices("posterUrl", "poster_url", "poster"),
        serialization_alias="posterUrl",
    )
    is_ongoing: bool = Field(
        default=False,
        validation_alias=AliasChoices("isOngoing", "is_ongoing"),
        serialization_alias="isOngoing",
    )
    latest_update_info: str = Field(
        default="",
        validation_alias=AliasChoices("latestUpdateInfo", "latest_update_info"),
        serialization_alias="latestUpdateInfo",
    )
    link: str = ""
    external_ref: ExternalRef | None = Field(
        default=None,
        validation_alias=AliasChoices("externalRef", "external_ref"),
        serialization_alias="externalRef",
    )
    sources: list[str] = Field(default_factory=list)

    _trust: dict[str, int] = PrivateAttr(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: object) -> MediaType:
        return MediaType.coerce(value)

    @field_validator(
        "release_date",
        "director_or_author",
        "description",
        "rating",
        "poster_url",
        "latest_update_info",
        "link",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: object) -> str:
        if value is None:
            return ""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, list):
            return ", ".join(str(part).strip() for part in value if str(part).strip())
        return str(value).strip()

    @field_validator("cast", mode="before")
    @classmethod
    def _coerce_cast(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            parts = value.replace("、", ",").replace("/", ",").split(",")
            return [part.strip() for part in parts if part.strip()]
        if isinstance(value, list):
            return [str(part).strip() for part in value if str(part).strip()]
        return []

    @field_validator("is_ongoing", mode="before")
    @classmethod
    def _coerce_bool(cls, value: object) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "yes", "1", "ongoing"}
        return bool(value)

    def trust_of(self, field: str) -> int:
        """Return the trust level of the source that set ``field``."""

        return self._trust.get(field, 0)

    def set_trust(self, field: str, level: int) -> None:
        self._trust[field] = level

    def mark_trust(self, level: int) -> "MediaItem":
        """Record ``level`` as the trust of every populated trusted field."""

        for field in TRUSTED_FIELDS:
            if field == "type" or getattr(self, field):
                self._trust[field] = level
        return self

    def year(self) -> str:
        """Return the four digit year prefix of the release date, if any."""

        prefix = self.release_date[:4]
        return prefix if len(prefix) == 4 and prefix.isdigit() else ""

    def ensure_poster(self) -> "MediaItem":
        """Fill an empty poster with a typed placeholder image."""

        if not self.poster_url:
            self.poster_url = placeholder_poster(self.type.value)
        return self

    def to_payload(self) -> dict[str, Any]:
        """Return the camelCase JSON shape the UI layer consumes."""

        return self.model_dump(mode="json", by_alias=True)


class ProviderResult(BaseModel):
    """Raw hit returned by a single search adapter."""

    title: str = ""
    snippet: str = ""
    link: str = ""
    image: str | None = None
    source: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_context(self) -> dict[str, Any]:
        """Return the compact form used as AI grounding context."""

        payload: dict[str, Any] = {
            "title": self.title,
            "snippet": self.snippet,
            "link": self.link,
        }
        if self.image:
            payload["image"] = self.image
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class PluginResult(BaseModel):
    """Result shape a search plugin must return."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str
    year: str | None = None
    poster: str | None = None
    description: str | None = None
    rating: str | None = None
    link: str | None = None
    type: str | None = None
    director_or_author: str | None = Field(
        default=None,
        validation_alias=AliasChoices("directorOrAuthor", "director_or_author"),
    )
    cast: list[str] = Field(default_factory=list)

    @field_validator("year", "rating", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class Plugin(BaseModel):
    """A user supplied search script."""

    id: str
    name: str
    version: str = "0.0.0"
    author: str = ""
    description: str = ""
    script: str
    enabled: bool = True


class ConnectionStatus(BaseModel):
    """Outcome of a provider connectivity check."""

    ok: bool
    provider: str
    error: str | None = None
    latency_ms: int | None = None
    count: int | None = None


class UpdateStatus(BaseModel):
    """Latest episode or chapter reported for one tracked record."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    latest_update_info: str = Field(
        default="",
        validation_alias=AliasChoices("latestUpdateInfo", "latest_update_info"),
        serialization_alias="latestUpdateInfo",
    )
    is_ongoing: bool = Field(
        default=False,
        validation_alias=AliasChoices("isOngoing", "is_ongoing"),
        serialization_alias="isOngoing",
    )

    @field_validator("latest_update_info", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("is_ongoing", mode="before")
    @classmethod
    def _coerce_bool(cls, value: object) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "yes", "1", "ongoing"}
        return bool(value)

    def apply_to(self, item: MediaItem) -> MediaItem:
        """Return a copy of ``item`` carrying this status."""

        return item.model_copy(
            update={
                "latest_update_info": self.latest_update_info or item.latest_update_info,
                "is_ongoing": self.is_ongoing,
            }
        )


class IOLogEntry(BaseModel):
    """One request/response snapshot recorded by the I/O log."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    channel: Literal["ai", "search"]
    provider: str | None = None
    query: str | None = None
    request: Any = None
    response: Any = None
    duration_ms: int | None = None
    search_type: SearchType | None = None
    model: str | None = None
    base_url: str | None = None
