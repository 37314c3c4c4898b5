"""Keyword tables used to infer media types and filter non-media web hits."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal, Mapping

from .models import MediaType
from .utils import contains_cjk

Language = Literal["en", "zh"]


@dataclass(frozen=True)
class KeywordRule:
    """Maps a set of keywords in one language onto a media type."""

    language: Language
    media_type: MediaType
    keywords: tuple[str, ...]


# Ordered most specific first; the first matching rule wins.
TYPE_RULES: tuple[KeywordRule, ...] = (
    KeywordRule("zh", MediaType.SHORT_DRAMA, ("短剧", "微短剧")),
    KeywordRule("en", MediaType.SHORT_DRAMA, ("short drama", "mini drama", "vertical drama")),
    KeywordRule("zh", MediaType.TV_SERIES, ("电视剧", "剧集", "连续剧", "美剧", "日剧", "韩剧", "动画", "番剧")),
    KeywordRule(
        "en",
        MediaType.TV_SERIES,
        ("tv series", "tv show", "season", "episode", "series", "miniseries", "anime"),
    ),
    KeywordRule("zh", MediaType.COMIC, ("漫画", "连载漫画")),
    KeywordRule("en", MediaType.COMIC, ("comic", "manga", "manhwa", "graphic novel")),
    KeywordRule("zh", MediaType.BOOK, ("小说", "书籍", "图书", "作者")),
    KeywordRule("en", MediaType.BOOK, ("novel", "book", "paperback", "hardcover")),
    KeywordRule("zh", MediaType.MUSIC, ("专辑", "音乐", "单曲", "原声")),
    KeywordRule("en", MediaType.MUSIC, ("album", "soundtrack", "single", "ost", "music")),
    KeywordRule("zh", MediaType.MOVIE, ("电影", "影片", "院线")),
    KeywordRule("en", MediaType.MOVIE, ("movie", "film", "cinema")),
    KeywordRule("zh", MediaType.OTHER, ("游戏",)),
    KeywordRule("en", MediaType.OTHER, ("video game", "game")),
)

MEDIA_KEYWORDS: Mapping[Language, tuple[str, ...]] = {
    "en": (
        "movie",
        "film",
        "tv series",
        "season",
        "episode",
        "novel",
        "book",
        "comic",
        "manga",
        "album",
        "music",
        "soundtrack",
        "ost",
    ),
    "zh": ("电影", "电视剧", "短剧", "漫画", "小说", "书籍", "专辑", "音乐", "原声", "ost"),
}

NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "iphone",
    "apple",
    "samsung",
    "huawei",
    "vs",
    "review",
    "price",
    "spec",
    "launch",
    "press",
    "event",
    "news",
    "rumor",
    "新闻",
    "发布会",
    "评测",
    "开箱",
    "手机",
    "参数",
    "报价",
    "快讯",
)

# Terms appended to a query to bias engines without native type filters.
TYPE_TERMS: Mapping[Language, Mapping[MediaType, str]] = {
    "en": {
        MediaType.MOVIE: "movie",
        MediaType.TV_SERIES: "tv series",
        MediaType.BOOK: "novel",
        MediaType.COMIC: "comic",
        MediaType.SHORT_DRAMA: "short drama",
        MediaType.MUSIC: "album",
    },
    "zh": {
        MediaType.MOVIE: "电影",
        MediaType.TV_SERIES: "电视剧",
        MediaType.BOOK: "小说",
        MediaType.COMIC: "漫画",
        MediaType.SHORT_DRAMA: "短剧",
        MediaType.MUSIC: "专辑",
    },
}

# Broad disjunction used for short or ambiguous queries of unknown type.
BROAD_TYPE_TERMS: Mapping[Language, str] = {
    "en": (
        "movie OR tv series OR novel OR comic OR album "
        "-news -review -price -iphone -apple -samsung -huawei"
    ),
    "zh": (
        "电影 OR 电视剧 OR 小说 OR 漫画 OR 专辑 "
        "-新闻 -评测 -发布会 -价格 -手机 -iPhone -Apple -三星 -华为"
    ),
}


@lru_cache(maxsize=256)
def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    if contains_cjk(keyword):
        return re.compile(re.escape(keyword))
    return re.compile(r"\b" + re.escape(keyword) + r"\b")


def contains_keyword(text: str, keyword: str) -> bool:
    """Match latin keywords on word boundaries and CJK ones as substrings."""

    return bool(_keyword_pattern(keyword.lower()).search(text.lower()))


def detect_language(text: str, default: Language = "en") -> Language:
    """Prefer the Chinese tables whenever the text itself contains CJK."""

    if contains_cjk(text):
        return "zh"
    return default


def infer_media_type(text: str) -> MediaType | None:
    """Return the media type suggested by ``text``, or ``None`` if unknown."""

    if not text:
        return None
    for rule in TYPE_RULES:
        if any(contains_keyword(text, keyword) for keyword in rule.keywords):
            return rule.media_type
    return None


def has_negative_keyword(text: str) -> bool:
    return any(contains_keyword(text, keyword) for keyword in NEGATIVE_KEYWORDS)


def is_media_candidate(title: str, snippet: str, language: Language = "en") -> bool:
    """Whether a web hit looks like a media work rather than generic content."""

    text = f"{title} {snippet}"
    positives = MEDIA_KEYWORDS.get(language, ())
    if language != "en":
        # Chinese pages routinely mix in English labels such as "OST".
        positives = positives + MEDIA_KEYWORDS["en"]
    if not any(contains_keyword(text, keyword) for keyword in positives):
        return False
    return not has_negative_keyword(text)


def type_term(media_type: MediaType, language: Language) -> str | None:
    return TYPE_TERMS.get(language, TYPE_TERMS["en"]).get(media_type)
