"""Fire-and-forget request/response log for AI and search calls."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import IOLogRecord
from ..models import IOLogEntry

logger = logging.getLogger(__name__)


class IOLog:
    """Keeps recent entries in memory and persists them in the background.

    Recording never blocks or raises; persistence failures are logged at debug
    level and dropped.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        max_entries: int = 200,
    ):
        self._session_factory = session_factory
        self._recent: deque[IOLogEntry] = deque(maxlen=max_entries)
        self._pending: set[asyncio.Task[None]] = set()

    def record(self, entry: IOLogEntry) -> None:
        self._recent.appendleft(entry)
        if self._session_factory is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._persist(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for in-flight writes; used on shutdown and in tests."""

        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def recent(self, limit: int = 50) -> list[IOLogEntry]:
        """Return the newest ``limit`` entries, preferring the database copy."""

        if self._session_factory is not None:
            try:
                async with self._session_factory() as session:
                    rows = await session.scalars(
                        select(IOLogRecord).order_by(IOLogRecord.ts.desc()).limit(limit)
                    )
                    return [
                        IOLogEntry.model_validate(row, from_attributes=True)
                        for row in rows
                    ]
            except SQLAlchemyError as exc:
                logger.warning("Could not read I/O log from the database: %s", exc)
        return list(self._recent)[:limit]

    async def _persist(self, entry: IOLogEntry) -> None:
        payload = entry.model_dump(mode="json")
        payload["ts"] = entry.ts
        try:
            async with self._session_factory() as session:  # type: ignore[misc]
                session.add(IOLogRecord(**payload))
                await session.commit()
        except Exception as exc:
            logger.debug("Dropping I/O log entry %s: %s", entry.id, exc)
