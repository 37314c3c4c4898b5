"""Field-level merge rules for canonical media records.

Every source hands the pipeline :class:`~mediatracker.models.MediaItem`
instances. Records that describe the same work (same normalised title and
release year) are folded together with :func:`merge_into`, which only ever
adds information: a populated field is replaced solely by a strictly better
value, and missing sentinels such as ``"unknown"`` never survive over a real
value.
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping

from .models import MediaItem, MediaType
from .utils import PLACEHOLDER_BASE_URL, host_matches, normalize_title

MergeKey = tuple[str, str]

TRUST_METADATA = 2
TRUST_HEURISTIC = 0

MISSING_TOKENS = frozenset(
    {"", "unknown", "n/a", "na", "none", "null", "未知", "暂无", "tbd", "-"}
)

# Hosts that only ever serve placeholders or hotlink-protected thumbnails.
POSTER_BLACKLIST: tuple[str, ...] = (
    "placehold.co",
    "via.placeholder.com",
    "dummyimage.com",
    "placeholder.com",
    "fakeimg.pl",
    "picsum.photos",
    "alicdn.com",
    "ebayimg.com",
    "instagram.com",
    "facebook.com",
    "twitter.com",
    "x.com",
    "fbsbx.com",
)

LONG_DESCRIPTION_LENGTH = 60

_DATE_RE = re.compile(
    r"^\s*(\d{4})(?:\s*[-/.年]\s*(\d{1,2})(?:\s*[-/.月]\s*(\d{1,2}))?)?"
)


def is_missing(value: object) -> bool:
    """Return whether ``value`` is empty or one of the "unknown" sentinels."""

    if value is None:
        return True
    if isinstance(value, (list, tuple, set)):
        return not any(not is_missing(entry) for entry in value)
    return str(value).strip().lower() in MISSING_TOKENS


def is_blacklisted_poster(url: str) -> bool:
    return any(host_matches(url, domain) for domain in POSTER_BLACKLIST)


def is_missing_poster(url: str) -> bool:
    """Placeholder and blacklisted images count as no poster at all."""

    if is_missing(url):
        return True
    return url.startswith(PLACEHOLDER_BASE_URL) or is_blacklisted_poster(url)


def date_precision(value: str) -> int:
    """Score a date string: 0 missing, 1 year, 2 year-month, 3 full date."""

    if is_missing(value):
        return 0
    match = _DATE_RE.match(value)
    if not match:
        return 0
    if match.group(3):
        return 3
    if match.group(2):
        return 2
    return 1


def pick_better_date(
    current: str,
    candidate: str,
    *,
    current_trust: int = TRUST_HEURISTIC,
    candidate_trust: int = TRUST_HEURISTIC,
) -> str:
    """Return the more precise of two dates.

    At equal precision the current value is kept unless the candidate comes
    from a more trusted source.
    """

    current_precision = date_precision(current)
    candidate_precision = date_precision(candidate)
    if candidate_precision > current_precision:
        return candidate.strip()
    if (
        candidate_precision
        and candidate_precision == current_precision
        and candidate_trust > current_trust
    ):
        return candidate.strip()
    return current


def description_quality(text: str) -> int:
    """Score a synopsis: 0 missing, 1 short, 2 at least 60 characters."""

    if is_missing(text):
        return 0
    return 2 if len(text.strip()) >= LONG_DESCRIPTION_LENGTH else 1


def merge_key(item: MediaItem) -> MergeKey:
    return normalize_title(item.title), item.year()


def merge_into(target: MediaItem, incoming: MediaItem) -> MediaItem:
    """Fold ``incoming`` into ``target`` in place and return ``target``."""

    if target is incoming:
        return target

    if is_missing(target.title) and not is_missing(incoming.title):
        target.title = incoming.title

    target_type_trust = target.trust_of("type")
    incoming_type_trust = incoming.trust_of("type")
    if incoming.type != target.type:
        if incoming_type_trust > target_type_trust or (
            target.type is MediaType.OTHER and incoming_type_trust >= target_type_trust
        ):
            target.type = incoming.type
            target.set_trust("type", incoming_type_trust)

    better_date = pick_better_date(
        target.release_date,
        incoming.release_date,
        current_trust=target.trust_of("release_date"),
        candidate_trust=incoming.trust_of("release_date"),
    )
    if better_date != target.release_date:
        target.release_date = better_date
        target.set_trust("release_date", incoming.trust_of("release_date"))

    if _description_wins(target, incoming):
        target.description = incoming.description
        target.set_trust("description", incoming.trust_of("description"))

    if is_missing(target.director_or_author) and not is_missing(incoming.director_or_author):
        target.director_or_author = incoming.director_or_author
    if is_missing(target.rating) and not is_missing(incoming.rating):
        target.rating = incoming.rating
    if len(incoming.cast) > len(target.cast) and not is_missing(incoming.cast):
        target.cast = list(incoming.cast)
    if is_missing_poster(target.poster_url) and not is_missing_poster(incoming.poster_url):
        target.poster_url = incoming.poster_url
    if is_missing(target.latest_update_info) and not is_missing(incoming.latest_update_info):
        target.latest_update_info = incoming.latest_update_info
    if is_missing(target.link) and not is_missing(incoming.link):
        target.link = incoming.link
    if target.external_ref is None and incoming.external_ref is not None:
        target.external_ref = incoming.external_ref
    if incoming.is_ongoing and not target.is_ongoing:
        target.is_ongoing = True

    for source in incoming.sources:
        if source not in target.sources:
            target.sources.append(source)
    return target


def _description_wins(target: MediaItem, incoming: MediaItem) -> bool:
    incoming_quality = description_quality(incoming.description)
    if incoming_quality == 0:
        return False
    target_quality = description_quality(target.description)
    if target_quality == 0:
        return True
    target_trust = target.trust_of("description")
    incoming_trust = incoming.trust_of("description")
    if incoming_trust != target_trust:
        return incoming_trust > target_trust
    return incoming_quality > target_quality


def merge_all(groups: Iterable[Iterable[MediaItem]]) -> list[MediaItem]:
    """Merge several result lists, earlier groups taking precedence.

    A record without a year also matches a same-titled record that has one.
    A yearless record that picks up a year is re-keyed under that year, so it
    never absorbs a same-titled work from a different year.
    """

    merged: list[MediaItem] = []
    index: dict[MergeKey, MediaItem] = {}
    for group in groups:
        for item in group:
            key = merge_key(item)
            target = index.get(key) or _match_ignoring_year(index, key)
            if target is None:
                merged.append(item)
                index[key] = item
                continue
            merge_into(target, item)
            _rekey(index, target)
    return merged


def _match_ignoring_year(index: Mapping[MergeKey, MediaItem], key: MergeKey) -> MediaItem | None:
    title, year = key
    if year:
        candidate = index.get((title, ""))
        if candidate is not None and candidate.year() in ("", year):
            return candidate
        return None
    for (existing_title, _), item in index.items():
        if existing_title == title:
            return item
    return None


def _rekey(index: dict[MergeKey, MediaItem], target: MediaItem) -> None:
    title, year = merge_key(target)
    if not year:
        return
    if index.get((title, "")) is target:
        del index[(title, "")]
    index.setdefault((title, year), target)
