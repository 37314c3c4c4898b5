"""Build the ordered list of web-search query variants for a user query."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping

from .classifier import (
    BROAD_TYPE_TERMS,
    Language,
    detect_language,
    infer_media_type,
    type_term,
)
from .config import Settings
from .models import MediaType

VariantKind = Literal["precision", "typed", "base"]

# Authoritative domain group consulted for each media type.
DOMAIN_GROUP_FOR_TYPE: Mapping[MediaType, str] = {
    MediaType.MOVIE: "movie_tv",
    MediaType.TV_SERIES: "movie_tv",
    MediaType.SHORT_DRAMA: "movie_tv",
    MediaType.BOOK: "book",
    MediaType.COMIC: "comic",
    MediaType.MUSIC: "music",
    MediaType.OTHER: "movie_tv",
}


@dataclass(frozen=True)
class QueryVariant:
    """One query string to submit to the web-search adapter."""

    query: str
    kind: VariantKind
    domain: str | None = None


@dataclass(frozen=True)
class QueryPlan:
    """Query variants for one user query, most precise first."""

    raw: str
    language: Language
    media_type: MediaType | None
    inferred: bool
    short_or_ambiguous: bool
    variants: tuple[QueryVariant, ...]
    authoritative_domains: tuple[str, ...]

    @property
    def queries(self) -> tuple[str, ...]:
        return tuple(variant.query for variant in self.variants)


def is_short_or_ambiguous(query: str) -> bool:
    stripped = query.strip()
    return len(stripped) < 3 or stripped.isdigit()


def domain_group_for(media_type: MediaType | None) -> str:
    if media_type is None:
        return "movie_tv"
    return DOMAIN_GROUP_FOR_TYPE.get(media_type, "movie_tv")


def build_query_plan(
    query: str,
    media_type: MediaType | None,
    settings: Settings,
    *,
    language: Language | None = None,
) -> QueryPlan:
    """Return the precision-first query plan for ``query``.

    Short or purely numeric queries are flagged but still planned; when their
    type is unknown the typed variant falls back to a broad disjunction of
    media terms.
    """

    raw = " ".join(query.split())
    lang = detect_language(raw, language or settings.language)
    inferred = False
    effective_type = media_type
    if effective_type is None:
        effective_type = infer_media_type(raw)
        inferred = effective_type is not None
    short = is_short_or_ambiguous(raw)

    domains = settings.domains_for(domain_group_for(effective_type))
    precision_domains = domains[: settings.max_precision_queries]

    variants: list[QueryVariant] = [
        QueryVariant(f"site:{domain} {raw}", "precision", domain)
        for domain in precision_domains
    ]

    term: str | None = None
    if effective_type is not None:
        term = type_term(effective_type, lang)
    elif short:
        term = BROAD_TYPE_TERMS[lang]
    if term and term.lower() not in raw.lower():
        variants.append(QueryVariant(f"{raw} {term}", "typed"))

    variants.append(QueryVariant(raw, "base"))

    return QueryPlan(
        raw=raw,
        language=lang,
        media_type=effective_type,
        inferred=inferred,
        short_or_ambiguous=short,
        variants=tuple(variants),
        authoritative_domains=tuple(domains),
    )
