"""Tests for web result scoring and de-duplication."""

from __future__ import annotations

from mediatracker.config import Settings
from mediatracker.models import MediaType, ProviderResult
from mediatracker.query_planner import build_query_plan
from mediatracker.scoring import (
    AUTHORITATIVE_DOMAIN_BONUS,
    CONTAINS_QUERY_BONUS,
    EXACT_TITLE_BONUS,
    YEAR_BONUS,
    rank_results,
    score_result,
)

WIKIPEDIA_HIT = ProviderResult(
    title="Dune (2021 film) - Wikipedia",
    snippet="Dune is a 2021 American epic science fiction film directed by Denis Villeneuve.",
    link="https://en.wikipedia.org/wiki/Dune_(2021_film)",
)
SEQUEL_HIT = ProviderResult(
    title="Dune: Part Two",
    snippet="The 2024 film continues the story.",
    link="https://example.com/dune-part-two",
)
IMDB_HIT = ProviderResult(
    title="Dune (2021)",
    snippet="Directed by Denis Villeneuve.",
    link="https://www.imdb.com/title/tt1160419/",
    image="https://m.media-amazon.com/images/dune.jpg",
)


def test_score_components() -> None:
    domains = ("wikipedia.org",)

    assert score_result(WIKIPEDIA_HIT, "Dune", domains) == (
        EXACT_TITLE_BONUS + CONTAINS_QUERY_BONUS + YEAR_BONUS + AUTHORITATIVE_DOMAIN_BONUS
    )
    assert score_result(SEQUEL_HIT, "dune", domains) == CONTAINS_QUERY_BONUS + YEAR_BONUS


def test_rank_results_orders_and_merges_duplicates() -> None:
    """The Wikipedia and IMDb hits describe one film and collapse into a record."""

    settings = Settings(_env_file=None)
    plan = build_query_plan("Dune", MediaType.MOVIE, settings)

    items = rank_results([SEQUEL_HIT, WIKIPEDIA_HIT, IMDB_HIT], plan, unconstrained=False)

    assert [item.title for item in items] == ["Dune", "Dune: Part Two"]
    dune = items[0]
    assert dune.release_date == "2021"
    assert dune.type is MediaType.MOVIE
    assert dune.link == WIKIPEDIA_HIT.link
    assert dune.poster_url == IMDB_HIT.image
    assert dune.sources == ["web"]


def test_unconstrained_search_drops_non_media_hits() -> None:
    settings = Settings(_env_file=None)
    plan = build_query_plan("Dune", None, settings)
    noise = [
        ProviderResult(title="Dune buggy price list", snippet="Best movie-grade buggies", link="https://shop.example.com"),
        ProviderResult(title="Dune weather", snippet="Sunny", link="https://weather.example.com"),
    ]

    items = rank_results([*noise, WIKIPEDIA_HIT], plan, unconstrained=True)

    assert [item.title for item in items] == ["Dune"]


def test_type_is_inferred_from_the_hit_when_not_declared() -> None:
    settings = Settings(_env_file=None)
    plan = build_query_plan("Dune", None, settings)
    hit = ProviderResult(
        title="Dune", snippet="Dune is a 1965 science fiction novel by Frank Herbert.", link=""
    )

    (item,) = rank_results([hit], plan, unconstrained=True)

    assert item.type is MediaType.BOOK
    assert item.release_date == "1965"


def test_rank_results_caps_unique_records() -> None:
    settings = Settings(_env_file=None)
    plan = build_query_plan("Star", MediaType.MOVIE, settings)
    hits = [
        ProviderResult(title=f"Star {index}", snippet="film", link=f"https://example.com/{index}")
        for index in range(12)
    ]

    items = rank_results(hits, plan, unconstrained=False, limit=8)

    assert [item.title for item in items] == [f"Star {index}" for index in range(8)]


def test_exact_title_outranks_a_sequel_news_page() -> None:
    settings = Settings(_env_file=None)
    domains = ("wikipedia.org",)
    wikipedia = ProviderResult(
        title="Dune (2021 film) — Wikipedia",
        snippet=WIKIPEDIA_HIT.snippet,
        link=WIKIPEDIA_HIT.link,
    )
    roundup = ProviderResult(
        title="Dune: Part Two news roundup",
        snippet="Everything announced so far.",
        link="https://news.example.com/dune",
    )

    assert score_result(wikipedia, "Dune", domains) == (
        EXACT_TITLE_BONUS + CONTAINS_QUERY_BONUS + YEAR_BONUS + AUTHORITATIVE_DOMAIN_BONUS
    )
    assert score_result(roundup, "Dune", domains) == CONTAINS_QUERY_BONUS

    typed = rank_results(
        [roundup, wikipedia], build_query_plan("Dune", MediaType.MOVIE, settings), unconstrained=False
    )
    assert [item.title for item in typed] == ["Dune", "Dune: Part Two news roundup"]
    assert typed[0].release_date == "2021"

    untyped = rank_results(
        [roundup, wikipedia], build_query_plan("Dune", None, settings), unconstrained=True
    )
    assert [item.title for item in untyped] == ["Dune"]
