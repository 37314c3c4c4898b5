"""Best-effort backfill of incomplete canonical records."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..classifier import Language
from ..concurrency import with_timeout
from ..config import Settings
from ..merge import date_precision, description_quality, is_missing, is_missing_poster, merge_into
from ..models import MediaItem, MediaType
from .bangumi import BangumiClient
from .posters import PosterResolver
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

DETAIL_TYPES = frozenset({MediaType.MOVIE, MediaType.TV_SERIES})


def missing_detail_fields(item: MediaItem) -> list[str]:
    """Return the enrichable fields ``item`` still lacks."""

    missing: list[str] = []
    if date_precision(item.release_date) < 3:
        missing.append("release_date")
    if is_missing(item.director_or_author):
        missing.append("director_or_author")
    if description_quality(item.description) < 2:
        missing.append("description")
    if is_missing(item.cast):
        missing.append("cast")
    if is_missing_poster(item.poster_url):
        missing.append("poster_url")
    return missing


class EnrichmentEngine:
    """Fills gaps through a small pool of workers sharing one queue.

    Each record gets at most ``enrichment_timeout`` seconds; a record whose
    lookups time out is left as it was and the rest of the batch carries on.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        tmdb: TMDBClient,
        bangumi: BangumiClient,
        posters: PosterResolver,
    ):
        self._settings = settings
        self._tmdb = tmdb
        self._bangumi = bangumi
        self._posters = posters

    async def enrich(
        self, items: Sequence[MediaItem], language: Language = "en"
    ) -> list[MediaItem]:
        queue: asyncio.Queue[MediaItem] = asyncio.Queue()
        for item in items:
            if missing_detail_fields(item):
                queue.put_nowait(item)
        if queue.empty():
            return list(items)

        worker_count = min(self._settings.enrichment_workers, queue.qsize())
        workers = [
            asyncio.create_task(self._worker(queue, language)) for _ in range(worker_count)
        ]
        await asyncio.gather(*workers)
        return list(items)

    async def _worker(self, queue: asyncio.Queue[MediaItem], language: Language) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await with_timeout(
                    self.enrich_item(item, language),
                    self._settings.enrichment_timeout,
                    None,
                    description=f"Enrichment of {item.title}",
                )
            except Exception:
                logger.exception("Enrichment of %s failed; keeping it unenriched", item.title)
            finally:
                queue.task_done()

    async def enrich_item(self, item: MediaItem, language: Language = "en") -> MediaItem:
        """Apply detail lookups, then the poster chain if no real poster is known."""

        if item.type in DETAIL_TYPES and missing_detail_fields(item):
            await self._apply_tmdb_details(item)
        elif (
            item.external_ref is not None
            and item.external_ref.provider == "bangumi"
            and missing_detail_fields(item)
        ):
            await self._apply_bangumi_details(item)

        if is_missing_poster(item.poster_url):
            poster = await self._posters.resolve(item, language)
            if poster:
                item.poster_url = poster
        return item

    async def _apply_tmdb_details(self, item: MediaItem) -> None:
        if not self._tmdb.enabled:
            return
        reference = item.external_ref
        if reference is None or reference.provider != "tmdb":
            kind = "movie" if item.type is MediaType.MOVIE else "tv"
            reference = await self._tmdb.find_reference(item.title, kind, item.year())
        if reference is None:
            return
        details = await self._tmdb.get_details(reference.id, reference.kind)
        if details is None:
            return
        merge_into(item, details.to_item())
        logger.debug("Enriched %s from TMDB %s/%s", item.title, reference.kind, reference.id)

    async def _apply_bangumi_details(self, item: MediaItem) -> None:
        assert item.external_ref is not None
        payload = await self._bangumi.get_details(item.external_ref.id)
        if not payload:
            return
        details = BangumiClient.subject_to_item(payload, as_type=item.type)
        if details is not None:
            merge_into(item, details)
