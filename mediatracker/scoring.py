"""Relevance scoring and de-duplication of raw web-search hits."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .classifier import infer_media_type, is_media_candidate
from .merge import TRUST_HEURISTIC, MergeKey, merge_into, merge_key
from .models import MediaItem, MediaType, ProviderResult
from .query_planner import QueryPlan
from .utils import clean_title, extract_year, host_matches, strip_html

EXACT_TITLE_BONUS = 20
CONTAINS_QUERY_BONUS = 10
YEAR_BONUS = 5
AUTHORITATIVE_DOMAIN_BONUS = 15

MAX_UNIQUE_RESULTS = 8


@dataclass(frozen=True)
class ScoredResult:
    score: int
    result: ProviderResult


def score_result(
    result: ProviderResult, query: str, authoritative_domains: Iterable[str] = ()
) -> int:
    """Score a hit against the raw user query."""

    title = clean_title(result.title).casefold()
    needle = " ".join(query.split()).casefold()
    score = 0
    if needle and title == needle:
        score += EXACT_TITLE_BONUS
    if needle and needle in title:
        score += CONTAINS_QUERY_BONUS
    if extract_year(result.title, result.snippet):
        score += YEAR_BONUS
    if result.link and any(host_matches(result.link, domain) for domain in authoritative_domains):
        score += AUTHORITATIVE_DOMAIN_BONUS
    return score


def result_to_item(result: ProviderResult, plan: QueryPlan) -> MediaItem:
    """Convert a web hit into a low-trust canonical record."""

    text = f"{result.title} {result.snippet}"
    media_type = (
        (plan.media_type if not plan.inferred else None)
        or infer_media_type(text)
        or plan.media_type
        or MediaType.OTHER
    )
    item = MediaItem(
        title=clean_title(result.title),
        type=media_type,
        release_date=extract_year(result.title, result.snippet),
        description=strip_html(result.snippet),
        poster_url=result.image or "",
        link=result.link,
        sources=["web"],
    )
    return item.mark_trust(TRUST_HEURISTIC)


def rank_results(
    results: Iterable[ProviderResult],
    plan: QueryPlan,
    *,
    unconstrained: bool,
    limit: int = MAX_UNIQUE_RESULTS,
) -> list[MediaItem]:
    """Filter, score, sort and de-duplicate ``results``.

    ``unconstrained`` marks a search without a declared type; only those runs
    apply the media-candidate keyword filter. Ties keep their input order.
    Lower scored duplicates still fill empty fields of the kept record.
    """

    scored: list[ScoredResult] = []
    for result in results:
        if not clean_title(result.title):
            continue
        if unconstrained and not is_media_candidate(
            result.title, result.snippet, plan.language
        ):
            continue
        scored.append(
            ScoredResult(score_result(result, plan.raw, plan.authoritative_domains), result)
        )
    scored.sort(key=lambda entry: entry.score, reverse=True)

    kept: dict[MergeKey, MediaItem] = {}
    for entry in scored:
        item = result_to_item(entry.result, plan)
        key = merge_key(item)
        existing = kept.get(key)
        if existing is not None:
            merge_into(existing, item)
        elif len(kept) < limit:
            kept[key] = item
    return list(kept.values())
