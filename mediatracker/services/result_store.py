"""Cross-session store for final search results."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import KeyValueEntry
from ..models import MediaItem

logger = logging.getLogger(__name__)

_ITEMS_ADAPTER = TypeAdapter(list[MediaItem])


class ResultStore:
    """String key/value persistence with a companion ``<key>_ts`` timestamp.

    A value whose timestamp is missing or older than ``ttl`` seconds reads as
    absent. Database errors are logged and treated as a miss.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl: float,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._ttl = ttl
        self._clock = clock

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                entry = await session.get(KeyValueEntry, key)
                stamp = await session.get(KeyValueEntry, f"{key}_ts")
        except SQLAlchemyError as exc:
            logger.warning("Result store read failed for %s: %s", key, exc)
            return None
        if entry is None or stamp is None:
            return None
        try:
            written_at = float(stamp.value)
        except ValueError:
            return None
        if self._clock() - written_at > self._ttl:
            return None
        return entry.value

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._session_factory() as session:
                for entry_key, entry_value in (
                    (key, value),
                    (f"{key}_ts", repr(self._clock())),
                ):
                    existing = await session.get(KeyValueEntry, entry_key)
                    if existing is None:
                        session.add(KeyValueEntry(key=entry_key, value=entry_value))
                    else:
                        existing.value = entry_value
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Result store write failed for %s: %s", key, exc)

    async def get_items(self, key: str) -> list[MediaItem] | None:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return _ITEMS_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            logger.warning("Discarding unreadable cached results for %s: %s", key, exc)
            return None

    async def set_items(self, key: str, items: list[MediaItem]) -> None:
        payload = json.dumps([item.to_payload() for item in items], ensure_ascii=False)
        await self.set(key, payload)
