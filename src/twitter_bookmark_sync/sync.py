"""Keep the local bookmark collection in step with the remote timeline.

Three entry points, each guarded against re-entry:

    hard_sync()              paced walk through a fresh FetchQueue; a full
                             walk (with stale deletion) every few hours,
                             incremental otherwise
    soft_sync()              one small incremental walk, throttled
    apply_bookmark_events()  drain mutation events between syncs

The in-memory list is authoritative for the session. Repository writes that
fail are logged and picked up again by the next full sync.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .client import TwitterClient
from .errors import DbWriteFailure, QueueAbortedError, SyncError, error_code
from .events import MutationEventQueue, resolve_bookmark_event_plan
from .fetch_queue import FetchQueue, PacingConfig
from .models import Bookmark, EventType
from .reconcile import reconcile
from .state import BookmarkRepository, sort_bookmarks
from .store import (
    LAST_RECONCILE_KEY,
    LAST_SOFT_SYNC_KEY,
    LAST_SYNC_KEY,
    SOFT_SYNC_NEEDED_KEY,
    MemoryStore,
)

logger = logging.getLogger(__name__)

HARD_SYNC_BASE_TIMEOUT = 180.0
HARD_SYNC_TIMEOUT_PER_1000 = 30.0
HARD_SYNC_MAX_TIMEOUT = 600.0
CREATE_EVENT_DELAY = 1.5


def hard_sync_abort_timeout(bookmark_count: int) -> float:
    extra = (bookmark_count // 1000) * HARD_SYNC_TIMEOUT_PER_1000
    return min(HARD_SYNC_BASE_TIMEOUT + extra, HARD_SYNC_MAX_TIMEOUT)


@dataclass
class SyncSettings:
    soft_page_size: int = 20
    reconcile_throttle: float = 4 * 60 * 60
    soft_sync_throttle: float = 30 * 60
    create_event_delay: float = CREATE_EVENT_DELAY


@dataclass
class SyncOutcome:
    mode: str  # "full", "incremental", "soft", "events" or "skipped"
    new_count: int = 0
    stale_count: int = 0
    pages_requested: int = 0
    aborted: bool = False
    error: str | None = None


class BookmarkSync:
    def __init__(
        self,
        client: TwitterClient,
        repository: BookmarkRepository,
        store: MemoryStore,
        events: MutationEventQueue,
        settings: SyncSettings | None = None,
        pacing: PacingConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._repository = repository
        self._store = store
        self._events = events
        self._settings = settings or SyncSettings()
        self._pacing = pacing
        self._clock = clock
        self._bookmarks: list[Bookmark] = []
        self._loaded = False
        self._hard_running = False
        self._soft_running = False
        self._events_running = False
        self._queue: FetchQueue | None = None

    @property
    def bookmarks(self) -> list[Bookmark]:
        return list(self._bookmarks)

    @property
    def is_hard_syncing(self) -> bool:
        return self._hard_running

    async def load(self) -> list[Bookmark]:
        if not self._loaded:
            self._bookmarks = sort_bookmarks(await self._repository.load_all())
            self._loaded = True
        return self.bookmarks

    def _local_ids(self) -> set[str]:
        return {b.tweet_id for b in self._bookmarks}

    async def _merge(self, incoming: list[Bookmark]) -> list[Bookmark]:
        """Add bookmarks not already held, keeping newest-first order."""
        current = self._local_ids()
        deduped = [b for b in incoming if b.tweet_id not in current]
        if not deduped:
            return []
        self._bookmarks = sort_bookmarks(self._bookmarks + deduped)
        try:
            await self._repository.upsert_many(deduped)
        except DbWriteFailure as e:
            logger.warning("Keeping %d bookmark(s) in memory only: %s", len(deduped), e)
        return deduped

    async def _remove(self, tweet_ids: list[str]) -> int:
        drop = set(tweet_ids)
        before = len(self._bookmarks)
        self._bookmarks = [b for b in self._bookmarks if b.tweet_id not in drop]
        try:
            await self._repository.delete_many(list(tweet_ids))
        except DbWriteFailure as e:
            logger.warning("Bookmark removal not persisted: %s", e)
        return before - len(self._bookmarks)

    async def _elapsed_since(self, key: str) -> float:
        return self._clock() - float(await self._store.get_one(key) or 0)

    async def reconcile_due(self) -> bool:
        return await self._elapsed_since(LAST_RECONCILE_KEY) > self._settings.reconcile_throttle

    # ── Hard sync ──

    async def hard_sync(self, full: bool | None = None) -> SyncOutcome:
        """Walk the timeline through a paced queue.

        ``full=None`` picks a full walk when bookmarks exist locally and the
        last one is older than the reconcile throttle.
        """
        if self._hard_running:
            return SyncOutcome(mode="skipped")
        self._hard_running = True
        try:
            await self.load()
            if full is None:
                full = bool(self._bookmarks) and await self.reconcile_due()
            full = bool(full and self._bookmarks)
            return await self._run_hard_sync(full)
        finally:
            self._hard_running = False

    async def _run_hard_sync(self, full: bool) -> SyncOutcome:
        mode = "full" if full else "incremental"
        queue = FetchQueue(self._pacing)
        self._queue = queue
        timeout = hard_sync_abort_timeout(len(self._bookmarks))
        timer = asyncio.get_running_loop().call_later(timeout, queue.abort)
        logger.info("Starting %s sync (%d local bookmarks)", mode, len(self._bookmarks))

        pages_requested = 0
        pages_delivered = 0
        added_total = 0

        async def fetch_page(cursor: str | None):
            nonlocal pages_requested
            pages_requested += 1
            return await self._client.fetch_bookmarks_page(cursor, queue=queue)

        async def on_page(page_new: list[Bookmark]) -> None:
            nonlocal pages_delivered, added_total
            pages_delivered += 1
            added = await self._merge(page_new)
            added_total += len(added)
            logger.info("Page %d: %d new bookmark(s)", pages_delivered, len(added))

        try:
            result = await reconcile(
                self._local_ids(),
                fetch_page,
                full_reconcile=full,
                on_page=on_page,
            )
        except SyncError as e:
            aborted = queue.is_aborted
            if aborted:
                logger.warning("Sync aborted after %.0fs; kept partial progress", timeout)
            else:
                logger.error("Sync failed: %s", e)
            return SyncOutcome(
                mode=mode,
                new_count=added_total,
                pages_requested=pages_requested,
                aborted=aborted,
                error=error_code(e),
            )
        finally:
            timer.cancel()
            self._queue = None

        if queue.is_aborted:
            return SyncOutcome(
                mode=mode,
                new_count=len(result.new_bookmarks),
                pages_requested=result.pages_requested,
                aborted=True,
                error=QueueAbortedError.code,
            )

        stale_count = 0
        if full and result.stale_ids:
            stale_count = await self._remove(result.stale_ids)
            logger.info("Removed %d bookmark(s) deleted remotely", stale_count)

        now = self._clock()
        updates = {LAST_SYNC_KEY: now}
        if full:
            updates[LAST_RECONCILE_KEY] = now
        await self._store.set(updates)

        return SyncOutcome(
            mode=mode,
            new_count=len(result.new_bookmarks),
            stale_count=stale_count,
            pages_requested=result.pages_requested,
        )

    def abort(self) -> None:
        """Abort a running hard sync."""
        if self._queue is not None:
            self._queue.abort()

    # ── Soft sync ──

    async def soft_sync(self, force: bool = False) -> SyncOutcome:
        if self._hard_running or self._soft_running:
            return SyncOutcome(mode="skipped")
        if not force and await self._elapsed_since(LAST_SOFT_SYNC_KEY) < self._settings.soft_sync_throttle:
            logger.debug("Soft sync throttled")
            return SyncOutcome(mode="skipped")

        self._soft_running = True
        try:
            await self.load()
            result = await reconcile(
                self._local_ids(),
                lambda cursor: self._client.fetch_bookmarks_page(
                    cursor, count=self._settings.soft_page_size
                ),
                full_reconcile=False,
                on_page=self._merge,
            )
            await self._store.set({LAST_SOFT_SYNC_KEY: self._clock()})
            await self._store.remove([SOFT_SYNC_NEEDED_KEY])
            return SyncOutcome(
                mode="soft",
                new_count=len(result.new_bookmarks),
                pages_requested=result.pages_requested,
            )
        except SyncError as e:
            logger.warning("Soft sync failed: %s", e)
            return SyncOutcome(mode="soft", error=error_code(e))
        finally:
            self._soft_running = False

    async def refresh(self) -> SyncOutcome:
        """Manual refresh: full walk when one is due, else a soft sync."""
        if await self.reconcile_due():
            return await self.hard_sync(full=True)
        return await self.soft_sync()

    # ── Mutation events ──

    async def apply_bookmark_events(self) -> SyncOutcome:
        if self._events_running:
            return SyncOutcome(mode="skipped")
        self._events_running = True
        try:
            await self.load()
            events = await self._events.get()
            if not events:
                return SyncOutcome(mode="events")

            plan = resolve_bookmark_event_plan(events)
            delete_ids = [e.id for e in events if e.type is EventType.DELETE]
            create_ids = [e.id for e in events if e.type is EventType.CREATE]
            outcome = SyncOutcome(mode="events")

            if plan.ids_to_delete:
                outcome.stale_count = await self._remove(plan.ids_to_delete)
            if delete_ids:
                await self._events.ack(delete_ids)

            if not plan.needs_page_fetch:
                if create_ids:
                    await self._events.ack(create_ids)
                return outcome

            await asyncio.sleep(self._settings.create_event_delay)
            try:
                page = await self._client.fetch_bookmarks_page(
                    count=self._settings.soft_page_size
                )
            except SyncError as e:
                # Creates stay queued for the next pass.
                logger.warning("Could not fetch new bookmarks: %s", e)
                outcome.error = error_code(e)
                return outcome

            outcome.pages_requested = 1
            outcome.new_count = len(await self._merge(page.bookmarks))
            if create_ids:
                await self._events.ack(create_ids)
            return outcome
        finally:
            self._events_running = False

    # ── Unbookmark ──

    async def unbookmark(self, tweet_id: str) -> str | None:
        """Remove locally first, then on the server. Returns an error code on failure."""
        if not tweet_id:
            return None
        await self.load()
        await self._remove([tweet_id])
        try:
            response = await self._client.delete_bookmark(tweet_id)
        except SyncError as e:
            logger.warning("Remote unbookmark of %s failed: %s", tweet_id, e)
            return error_code(e)
        if not response.ok:
            logger.warning("Unbookmark of %s returned errors: %s", tweet_id, response.errors)
        return None
