"""Utility helpers shared across the search pipeline."""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import quote, urlparse


JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\[.*?\]|\{.*?\})\s*```", re.DOTALL)
BARE_ARRAY_RE = re.compile(r"\[\s*\{.*\}\s*\]", re.DOTALL)
YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
CJK_RE = re.compile(r"[぀-ヿ㐀-䶿一-鿿가-힯]")
HTML_TAG_RE = re.compile(r"<[^>]+>")

# Site-name suffixes such as " - Wikipedia", " | IMDb" or " — Douban".
_SUFFIX_RE = re.compile(r"\s+[-|–—]\s+.*$")
_UNDERSCORE_SUFFIX_RE = re.compile(r"_.*$")
# Trailing disambiguators like "(2021)", "(2021 film)" or "(TV series)".
_DISAMBIGUATOR_RE = re.compile(
    r"\s*[(（]\s*(?:(?:19|20)\d{2}\s*)?"
    r"(?:film|movie|tv series|tv show|series|novel|book|album|manga|comic|"
    r"miniseries|anime|电影|电视剧|小说|漫画|专辑|动画)?\s*[)）]\s*$",
    re.IGNORECASE,
)

PLACEHOLDER_BASE_URL = "https://placehold.co/600x900/1a1a1a/FFF"


def clean_title(title: str) -> str:
    """Strip site-name suffixes, trailing ellipses and year disambiguators."""

    cleaned = HTML_TAG_RE.sub("", title or "").strip()
    cleaned = _SUFFIX_RE.sub("", cleaned)
    cleaned = _UNDERSCORE_SUFFIX_RE.sub("", cleaned)
    cleaned = re.sub(r"(?:\.\.\.|…)$", "", cleaned).strip()
    stripped = _DISAMBIGUATOR_RE.sub("", cleaned).strip()
    return stripped or cleaned


def normalize_title(title: str) -> str:
    """Return the case-folded, whitespace-collapsed form used for merge keys."""

    return " ".join(clean_title(title).casefold().split())


def extract_year(*texts: str) -> str:
    """Return the first plausible release year found in ``texts``."""

    for text in texts:
        if not text:
            continue
        match = YEAR_RE.search(text)
        if match:
            return match.group(1)
    return ""


def contains_cjk(text: str) -> bool:
    return bool(CJK_RE.search(text or ""))


def strip_html(text: str) -> str:
    return " ".join(HTML_TAG_RE.sub("", text or "").split())


def host_of(url: str) -> str:
    """Return the lower-cased host of ``url`` without a ``www.`` prefix."""

    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def host_matches(url: str, domain: str) -> bool:
    """Whether ``url`` is served from ``domain`` or one of its subdomains."""

    host = host_of(url)
    domain = domain.lower()
    return bool(host) and (host == domain or host.endswith("." + domain))


def placeholder_poster(label: str = "Media") -> str:
    """Return a generated placeholder image URL for ``label``."""

    return f"{PLACEHOLDER_BASE_URL}?text={quote(label or 'Media')}"


def extract_json_array(content: str) -> list[Any]:
    """Extract and parse the first JSON array from a model response.

    A bare object is wrapped into a single element list and an object with an
    ``items`` or ``results`` list is unwrapped. Truncated arrays are recovered
    up to the last complete object.
    """

    match = JSON_BLOCK_RE.search(content)
    if match:
        payload = match.group(1)
    else:
        match = BARE_ARRAY_RE.search(content)
        if match:
            payload = match.group(0)
        else:
            payload = content.replace("```json", "").replace("```", "").strip()

    if not payload.startswith(("[", "{")):
        raise ValueError("No JSON array found in response")

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        last_brace = payload.rfind("}")
        if not payload.startswith("[") or last_brace <= 0:
            raise ValueError("Invalid JSON payload produced by the model") from exc
        try:
            parsed = json.loads(payload[: last_brace + 1] + "]")
        except json.JSONDecodeError as retry_exc:
            raise ValueError("Invalid JSON payload produced by the model") from retry_exc

    if isinstance(parsed, dict):
        for key in ("items", "results"):
            if isinstance(parsed.get(key), list):
                return parsed[key]
        return [parsed]
    if isinstance(parsed, list):
        return parsed
    raise ValueError("Model response JSON is not an array")
