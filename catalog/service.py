"""Read path: cache, then store, then a bounded upstream search.

``QueryService.query`` looks up the filter's cache key first. On a miss it
queries the store; if the store has nothing it asks the reconciler to search
upstream, inserts whatever the store is still missing, and caches the result
(empty results included). Cache and upstream failures only cost freshness;
store failures propagate.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from . import metrics
from .cache import Cache
from .crud import CharacterStore
from .filters import CharacterFilter, cache_key, matches_local_only
from .sync import SEARCH_MAX_PAGES, SyncReconciler
from .timing import timed

log = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300


class QueryService:
    def __init__(
        self,
        store: CharacterStore,
        cache: Cache,
        reconciler: SyncReconciler,
        *,
        ttl_seconds: int = CACHE_TTL_SECONDS,
        search_max_pages: int = SEARCH_MAX_PAGES,
    ) -> None:
        self._store = store
        self._cache = cache
        self._reconciler = reconciler
        self._ttl = ttl_seconds
        self._max_pages = search_max_pages

    async def query(self, flt: Optional[CharacterFilter] = None) -> List[Dict[str, Any]]:
        """Return characters matching ``flt`` (all characters when None).

        May insert into the store and always writes the cache, even though it
        is a read.
        """
        return await timed("query", self._query, flt)

    async def _query(self, flt: Optional[CharacterFilter]) -> List[Dict[str, Any]]:
        key = cache_key(flt)

        cached = await self._cache_get(key)
        if cached is not None:
            metrics.record_cache_hit()
            log.info("query.cache_hit key=%s rows=%d", key, len(cached))
            return cached
        metrics.record_cache_miss()

        rows = await self._store.find_all(flt)
        source = "store"
        if not rows:
            rows = await self._search_upstream(flt)
            source = "upstream"

        await self._cache_set(key, rows)
        log.info("query.served key=%s source=%s rows=%d", key, source, len(rows))
        return rows

    async def _search_upstream(
        self, flt: Optional[CharacterFilter]
    ) -> List[Dict[str, Any]]:
        # Page fetch failures are absorbed by the reconciler.
        found = await self._reconciler.search_and_sync(flt, self._max_pages)

        records = [r for r in found if matches_local_only(r, flt)]
        if not records:
            return []

        existing = await self._store.find_existing_ids(r["id"] for r in records)
        missing = [r for r in records if r["id"] not in existing]
        if missing:
            await self._store.bulk_create(missing, ignore_duplicates=True)
            log.info("query.lazy_populate inserted=%d", len(missing))
        return records

    async def _cache_get(self, key: str) -> Optional[List[Dict[str, Any]]]:
        try:
            return await self._cache.get(key)
        except Exception as exc:
            metrics.record_cache_error("get")
            log.warning("query.cache_get_failed key=%s error=%r", key, exc)
            return None

    async def _cache_set(self, key: str, rows: List[Dict[str, Any]]) -> None:
        try:
            await self._cache.set(key, rows, self._ttl)
        except Exception as exc:
            metrics.record_cache_error("set")
            log.warning("query.cache_set_failed key=%s error=%r", key, exc)
