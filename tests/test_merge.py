"""Tests for the field-level merge rules."""

from __future__ import annotations

from mediatracker.merge import (
    TRUST_HEURISTIC,
    TRUST_METADATA,
    date_precision,
    description_quality,
    is_missing,
    is_missing_poster,
    merge_all,
    merge_into,
    pick_better_date,
)
from mediatracker.models import MediaItem, MediaType
from mediatracker.utils import placeholder_poster

LONG_OVERVIEW = (
    "Paul Atreides, a brilliant and gifted young man, must travel to the most "
    "dangerous planet in the universe."
)


def _ai_item(**fields: object) -> MediaItem:
    item = MediaItem(sources=["ai"], **fields)
    return item.mark_trust(TRUST_HEURISTIC)


def _tmdb_item(**fields: object) -> MediaItem:
    item = MediaItem(sources=["tmdb"], **fields)
    return item.mark_trust(TRUST_METADATA)


def test_missing_sentinels() -> None:
    assert is_missing("Unknown")
    assert is_missing(" 暂无 ")
    assert is_missing(["", "N/A"])
    assert not is_missing(["Timothée Chalamet"])
    assert is_missing_poster(placeholder_poster("Movie"))
    assert is_missing_poster("https://via.placeholder.com/300")
    assert not is_missing_poster("https://image.tmdb.org/t/p/w500/dune.jpg")


def test_date_precision_and_selection() -> None:
    assert date_precision("2021-10-22") == 3
    assert date_precision("2021年10月") == 2
    assert date_precision("2021") == 1
    assert date_precision("unknown") == 0

    assert pick_better_date("2021", "2021-10-22") == "2021-10-22"
    assert pick_better_date("2021-10-22", "2021") == "2021-10-22"
    assert (
        pick_better_date("2021-09-03", "2021-10-22", current_trust=0, candidate_trust=2)
        == "2021-10-22"
    )
    assert pick_better_date("2021-09-03", "2021-10-22") == "2021-09-03"


def test_description_quality() -> None:
    assert description_quality("") == 0
    assert description_quality("A desert planet.") == 1
    assert description_quality(LONG_OVERVIEW) == 2


def test_merge_fills_gaps_without_overwriting() -> None:
    target = _ai_item(
        title="Dune",
        type="Movie",
        releaseDate="2021",
        directorOrAuthor="unknown",
        poster_url=placeholder_poster("Movie"),
        rating="8.0/10",
    )
    incoming = _tmdb_item(
        title="Dune",
        type="Movie",
        releaseDate="2021-10-22",
        directorOrAuthor="Denis Villeneuve",
        description=LONG_OVERVIEW,
        cast=["Timothée Chalamet", "Rebecca Ferguson"],
        rating="7.8/10",
        poster_url="https://image.tmdb.org/t/p/w500/dune.jpg",
    )

    merge_into(target, incoming)

    assert target.release_date == "2021-10-22"
    assert target.director_or_author == "Denis Villeneuve"
    assert target.description == LONG_OVERVIEW
    assert target.cast == ["Timothée Chalamet", "Rebecca Ferguson"]
    assert target.rating == "8.0/10"
    assert target.poster_url == "https://image.tmdb.org/t/p/w500/dune.jpg"
    assert target.sources == ["ai", "tmdb"]


def test_trusted_description_beats_longer_guess() -> None:
    target = _ai_item(title="Dune", description=LONG_OVERVIEW + " Extra words from a model.")
    incoming = _tmdb_item(title="Dune", description="A noble family becomes embroiled in a war.")

    merge_into(target, incoming)

    assert target.description == "A noble family becomes embroiled in a war."
    assert target.trust_of("description") == TRUST_METADATA


def test_type_changes_only_for_stronger_sources() -> None:
    trusted = _tmdb_item(title="Dune", type="Movie")
    merge_into(trusted, _ai_item(title="Dune", type="TV Series"))
    assert trusted.type is MediaType.MOVIE

    unknown = _ai_item(title="Dune", type="Other")
    merge_into(unknown, _ai_item(title="Dune", type="Book"))
    assert unknown.type is MediaType.BOOK


def test_merge_all_prefers_earlier_groups() -> None:
    tmdb = [_tmdb_item(title="Dune", type="Movie", releaseDate="2021-10-22")]
    ai = [
        _ai_item(title="dune", type="Movie", description="Guess."),
        _ai_item(title="Dune", type="Movie", releaseDate="1984"),
    ]

    merged = merge_all([tmdb, ai])

    assert len(merged) == 2
    first, second = merged
    assert first is tmdb[0]
    assert first.sources == ["tmdb", "ai"]
    assert first.description == "Guess."
    assert second.release_date == "1984"


def test_ongoing_flag_is_sticky() -> None:
    target = _tmdb_item(title="One Piece", type="TV Series")
    merge_into(target, _ai_item(title="One Piece", isOngoing=True, latestUpdateInfo="Episode 1100"))

    assert target.is_ongoing is True
    assert target.latest_update_info == "Episode 1100"


def test_yearless_record_is_claimed_by_one_year_only() -> None:
    douban = MediaItem(title="Dune", type="Movie", sources=["plugin:douban"])
    plugin = [douban.mark_trust(TRUST_METADATA)]
    tmdb = [
        _tmdb_item(title="Dune", type="Movie", releaseDate="2021-10-22"),
        _tmdb_item(title="Dune", type="Movie", releaseDate="1984-12-14"),
    ]

    merged = merge_all([plugin, tmdb])

    assert len(merged) == 2
    newer, older = merged
    assert newer is plugin[0]
    assert newer.release_date == "2021-10-22"
    assert newer.sources == ["plugin:douban", "tmdb"]
    assert older is tmdb[1]
    assert older.release_date == "1984-12-14"
    assert older.sources == ["tmdb"]


def test_merging_a_copy_changes_nothing() -> None:
    original = _ai_item(
        title="Dune",
        type="Movie",
        releaseDate="2021",
        description="Guess.",
        cast=["Timothée Chalamet"],
        isOngoing=False,
    )
    snapshot = original.model_copy(deep=True)

    merge_into(original, original.model_copy(deep=True))

    assert original.model_dump() == snapshot.model_dump()
    for field in ("type", "release_date", "description"):
        assert original.trust_of(field) == snapshot.trust_of(field)


def test_picked_date_is_never_less_precise() -> None:
    values = ["", "unknown", "2021", "2021-10", "2021年10月", "2021-10-22", "1984-12-14"]

    for current in values:
        for candidate in values:
            for current_trust, candidate_trust in (
                (TRUST_HEURISTIC, TRUST_HEURISTIC),
                (TRUST_HEURISTIC, TRUST_METADATA),
                (TRUST_METADATA, TRUST_HEURISTIC),
            ):
                picked = pick_better_date(
                    current,
                    candidate,
                    current_trust=current_trust,
                    candidate_trust=candidate_trust,
                )
                assert date_precision(picked) == max(
                    date_precision(current), date_precision(candidate)
                ), (current, candidate)
