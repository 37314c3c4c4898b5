"""Tests for the in-memory TTL caches."""

from __future__ import annotations

import pytest

from mediatracker.cache import ResponseCache, cache_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache: ResponseCache[list[str]] = ResponseCache(60, name="search", clock=clock)

    cache.set("web|dune|{}", ["hit"])
    clock.now += 60
    assert cache.get("web|dune|{}") == ["hit"]
    assert "web|dune|{}" in cache

    clock.now += 1
    assert cache.get("web|dune|{}") is None
    assert len(cache) == 0


def test_cache_key_is_independent_of_parameter_order() -> None:
    assert cache_key("web", "dune", {"type": "text", "provider": "serper"}) == cache_key(
        "web", "dune", {"provider": "serper", "type": "text"}
    )
    assert cache_key("web", "dune", {"type": "image"}) != cache_key("web", "dune", {"type": "text"})


def test_clear_and_ttl_validation() -> None:
    cache: ResponseCache[int] = ResponseCache(10)
    cache.set("a", 1)
    cache.clear()
    assert cache.get("a") is None

    with pytest.raises(ValueError):
        ResponseCache(0)
