"""Reconciliation between the upstream API and the local store.

Entry points:

* ``sync_all``: reconcile the first ``full_sync_limit`` records of page 1.
  Called by the scheduler and ``POST /sync``.
* ``search_and_sync``: paginate a filtered upstream search (bounded by
  ``max_pages``), reconcile every record seen, and return the ones that also
  satisfy the local-only predicates (origin).

Reconciliation is full-replace-on-any-diff: a record is inserted when its id
is unknown, rewritten in full when any compared field differs, and left alone
otherwise. Upstream failures are logged and end the current fetch; records
already reconciled stay. Store failures propagate.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional

from . import metrics
from .clients import UpstreamClient, UpstreamError, normalize_character
from .crud import CharacterStore
from .filters import CharacterFilter, matches_local_only, upstream_params
from .models import RECORD_FIELDS
from .timing import timed

log = logging.getLogger(__name__)

FULL_SYNC_LIMIT = 15
SEARCH_MAX_PAGES = 3


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class SyncReport(NamedTuple):
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    invalid: int = 0
    failed: bool = False


class _IdLocks:
    """One asyncio.Lock per character id, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, character_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(character_id)
        if lock is None:
            lock = self._locks[character_id] = asyncio.Lock()
        self._users[character_id] = self._users.get(character_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[character_id] -= 1
            if not self._users[character_id]:
                del self._users[character_id]
                del self._locks[character_id]

    def __len__(self) -> int:
        return len(self._locks)


class SyncReconciler:
    def __init__(
        self,
        store: CharacterStore,
        client: UpstreamClient,
        *,
        full_sync_limit: int = FULL_SYNC_LIMIT,
    ) -> None:
        self._store = store
        self._client = client
        self._limit = full_sync_limit
        self._locks = _IdLocks()

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def upsert(self, raw: Dict[str, Any]) -> UpsertOutcome:
        """Normalize one upstream record and reconcile it with the store.

        Raises:
            ValueError: If the record lacks an id or image.
        """
        return await self._reconcile(normalize_character(raw))

    async def _reconcile(self, record: Dict[str, Any]) -> UpsertOutcome:
        # Serialized per id so concurrent syncs cannot interleave find/write.
        async with self._locks.hold(record["id"]):
            existing = await self._store.find_one(record["id"])
            if existing is None:
                await self._store.create(record)
                outcome = UpsertOutcome.CREATED
            elif any(existing.get(f) != record[f] for f in RECORD_FIELDS):
                await self._store.update(record)
                outcome = UpsertOutcome.UPDATED
            else:
                outcome = UpsertOutcome.UNCHANGED

        metrics.record_sync_outcome(outcome.value)
        log.debug("sync.upsert id=%d outcome=%s", record["id"], outcome.value)
        return outcome

    def _normalize(self, raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return normalize_character(raw)
        except (TypeError, ValueError) as exc:
            metrics.record_sync_outcome("invalid")
            log.warning("sync.skip_invalid error=%s", exc)
            return None

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def sync_all(self) -> SyncReport:
        return await timed("sync_all", self._sync_all)

    async def _sync_all(self) -> SyncReport:
        try:
            page = await self._client.fetch_page(1)
        except UpstreamError as exc:
            metrics.record_upstream_error()
            log.warning("sync.full upstream_failed error=%r", exc)
            return SyncReport(failed=True)

        batch = page.results[: self._limit]
        counts: Counter = Counter()
        for raw in batch:
            record = self._normalize(raw)
            if record is None:
                counts["invalid"] += 1
                continue
            counts[(await self._reconcile(record)).value] += 1

        report = SyncReport(
            fetched=len(batch),
            created=counts["created"],
            updated=counts["updated"],
            unchanged=counts["unchanged"],
            invalid=counts["invalid"],
        )
        log.info(
            "sync.full complete fetched=%d created=%d updated=%d unchanged=%d invalid=%d",
            *report[:5],
        )
        return report

    async def seed_if_empty(self) -> int:
        """Run a full sync when the store holds no characters.

        Returns:
            Number of records created (0 if the store was already populated).
        """
        count = await self._store.count()
        if count > 0:
            log.debug("sync.seed skipped: store already populated (rows=%d)", count)
            return 0
        log.info("sync.seed starting: empty store detected")
        return (await self.sync_all()).created

    # ------------------------------------------------------------------
    # Filtered search
    # ------------------------------------------------------------------

    async def search_and_sync(
        self,
        flt: Optional[CharacterFilter] = None,
        max_pages: int = SEARCH_MAX_PAGES,
    ) -> List[Dict[str, Any]]:
        return await timed("search_and_sync", self._search_and_sync, flt, max_pages)

    async def _search_and_sync(
        self, flt: Optional[CharacterFilter], max_pages: int
    ) -> List[Dict[str, Any]]:
        params = upstream_params(flt)
        found: List[Dict[str, Any]] = []
        seen = 0
        page_no = 1

        while page_no <= max_pages:
            try:
                page = await self._client.fetch_page(page_no, params)
            except UpstreamError as exc:
                metrics.record_upstream_error()
                log.warning(
                    "sync.search page_failed page=%d params=%s error=%r",
                    page_no,
                    params,
                    exc,
                )
                break

            if not page.results:
                break

            for raw in page.results:
                record = self._normalize(raw)
                if record is None:
                    continue
                seen += 1
                await self._reconcile(record)
                if matches_local_only(record, flt):
                    found.append(record)

            last = page_no >= page.pages if page.pages else not page.next
            if last:
                break
            page_no += 1

        log.info(
            "sync.search complete params=%s pages=%d seen=%d matched=%d",
            params,
            min(page_no, max_pages),
            seen,
            len(found),
        )
        return found
