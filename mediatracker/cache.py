"""In-memory TTL caches for provider responses."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Generic, Mapping, TypeVar

T = TypeVar("T")


def cache_key(provider: str, query: str, params: Mapping[str, Any] | None = None) -> str:
    """Build a stable key from a provider, a query string and its parameters."""

    encoded = json.dumps(dict(params or {}), sort_keys=True, ensure_ascii=False, default=str)
    return f"{provider}|{query}|{encoded}"


class ResponseCache(Generic[T]):
    """Process-local cache whose entries expire ``ttl`` seconds after writing.

    Expired entries are dropped when read, so a stale read behaves exactly like
    a miss. There is no size bound.
    """

    def __init__(
        self,
        ttl: float,
        *,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: dict[str, tuple[float, T]] = {}

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, payload = entry
        if self._clock() - stored_at > self.ttl:
            self._entries.pop(key, None)
            return None
        return payload

    def set(self, key: str, payload: T) -> None:
        self._entries[key] = (self._clock(), payload)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None
