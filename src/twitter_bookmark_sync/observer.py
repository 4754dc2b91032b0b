"""Passive observation of the host site's own GraphQL traffic.

The engine never asks for credentials or query IDs. It watches requests the
web client makes anyway and learns from them:

    on_send_headers    auth headers, endpoint catalog, query IDs,
                       delete events keyed by the page referer
    on_before_request  delete events keyed by the request body
    on_completed       create events, once the host confirms with a 2xx

Requests the engine issued itself are ignored so its own calls never feed
back into the event queue.
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlsplit

from .auth import AuthSessionManager
from .catalog import EndpointCatalog
from .events import (
    MutationEventQueue,
    extract_tweet_id_from_body,
    extract_tweet_id_from_referer,
    parse_bookmark_mutation,
)
from .models import EventType
from .resolver import EndpointResolver
from .store import (
    FEATURES_KEY,
    LAST_MUTATION_DONE_KEY,
    LAST_MUTATION_KEY,
    LAST_SOFT_SYNC_KEY,
    QUERY_ID_KEYS,
    SOFT_SYNC_NEEDED_KEY,
    MemoryStore,
)

logger = logging.getLogger(__name__)

ENGINE_INITIATOR = "twitter-bookmark-sync"
EXTENSION_INITIATOR_PREFIX = "chrome-extension://"

SOFT_SYNC_SIGNAL_DEBOUNCE = 60.0
SOFT_SYNC_THROTTLE = 30 * 60

_OBSERVED_OPERATIONS = re.compile(
    r"/i/api/graphql/([^/?]+)/(Bookmarks|TweetDetail|DeleteBookmark|CreateBookmark)(?:[/?]|$)"
)


@dataclass
class ObservedRequest:
    """One request seen on the wire, as reported by the browser bridge."""

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    initiator: str = ""
    status_code: int | None = None
    form_data: Mapping[str, list[str]] | None = None
    raw_body: list[bytes] | None = None

    def header(self, name: str) -> str:
        target = name.lower()
        for key, value in self.headers.items():
            if key.lower() == target:
                return value if isinstance(value, str) else ""
        return ""


class TrafficObserver:
    def __init__(
        self,
        auth: AuthSessionManager,
        resolver: EndpointResolver,
        catalog: EndpointCatalog,
        events: MutationEventQueue,
        store: MemoryStore,
        clock: Callable[[], float] = time.time,
        engine_initiator: str = ENGINE_INITIATOR,
    ):
        self._auth = auth
        self._resolver = resolver
        self._catalog = catalog
        self._events = events
        self._store = store
        self._clock = clock
        self._engine_initiator = engine_initiator
        self._last_soft_sync_signal = 0.0
        self._background: set[asyncio.Task] = set()

    def is_engine_initiated(self, request: ObservedRequest) -> bool:
        initiator = request.initiator or ""
        return initiator.startswith(EXTENSION_INITIATOR_PREFIX) or (
            bool(self._engine_initiator) and initiator == self._engine_initiator
        )

    # ── Request lifecycle ──

    async def on_send_headers(self, request: ObservedRequest) -> None:
        if not request.headers:
            return

        if await self._auth.capture_from_observed_headers(request.headers):
            self._spawn(self._resolver.discover_all_missing())

        await self._catalog.record(request.url, request.method)
        await self._store_observed_query_id(request.url)

        engine_initiated = self.is_engine_initiated(request)
        mutation = parse_bookmark_mutation(request.url)
        if mutation and not engine_initiated:
            referer = request.header("referer")
            tweet_id = extract_tweet_id_from_referer(referer) or ""
            await self._store.set(
                {
                    LAST_MUTATION_KEY: {
                        "at": self._clock(),
                        "operation": mutation.operation.value,
                        "url": request.url,
                        "referer": referer,
                        "tweet_id": tweet_id,
                        "initiator": request.initiator,
                    }
                }
            )
            # Creates wait for on_completed so a follow-up fetch can see them.
            if mutation.operation is EventType.DELETE:
                await self._events.record(EventType.DELETE, tweet_id, "x.com-headers")

        if not engine_initiated:
            await self.maybe_signal_soft_sync()

    async def on_before_request(self, request: ObservedRequest) -> None:
        if self.is_engine_initiated(request):
            return
        mutation = parse_bookmark_mutation(request.url)
        if not mutation:
            return

        tweet_id = extract_tweet_id_from_body(request.form_data, request.raw_body) or ""
        storage_key = QUERY_ID_KEYS[mutation.operation.value]
        await self._store.set({storage_key: mutation.query_id})
        if mutation.operation is EventType.DELETE:
            await self._events.record(EventType.DELETE, tweet_id, "x.com")

    async def on_completed(self, request: ObservedRequest) -> None:
        if self.is_engine_initiated(request):
            return
        if request.status_code is None or not 200 <= request.status_code < 300:
            return
        mutation = parse_bookmark_mutation(request.url)
        if not mutation:
            return

        await self._store.set(
            {
                LAST_MUTATION_DONE_KEY: {
                    "at": self._clock(),
                    "operation": mutation.operation.value,
                    "url": request.url,
                    "status_code": request.status_code,
                    "initiator": request.initiator,
                }
            }
        )
        if mutation.operation is EventType.CREATE:
            await self._events.record(EventType.CREATE, "", "x.com-completed")

    async def _store_observed_query_id(self, url: str) -> None:
        match = _OBSERVED_OPERATIONS.search(url)
        if not match:
            return
        query_id, operation = match.groups()
        updates = {QUERY_ID_KEYS[operation]: query_id}
        if operation == "Bookmarks":
            features = parse_qs(urlsplit(url).query).get("features")
            if features and features[0]:
                updates[FEATURES_KEY] = features[0]
        await self._store.set(updates)

    # ── Content-script signals ──

    async def on_bookmark_mutation_message(
        self, operation: str, tweet_id: str | None = None, source: str | None = None
    ) -> bool:
        """Mutation relayed from the page. Returns False for unknown operations."""
        try:
            event_type = EventType(operation)
        except ValueError:
            return False
        # Only the completion observer knows a create has landed server-side.
        if event_type is EventType.CREATE:
            return True
        await self._events.record(
            event_type,
            tweet_id if isinstance(tweet_id, str) else "",
            source if isinstance(source, str) and source else "content-script",
        )
        return True

    async def on_user_detected(self, user_id: str | None) -> None:
        await self._auth.record_detected_user(user_id)

    async def on_query_ids(self, ids: Mapping[str, str]) -> dict[str, str]:
        return await self._resolver.store_query_ids(dict(ids))

    # ── Soft-sync signal ──

    async def maybe_signal_soft_sync(self) -> bool:
        """Flag that the host is active and a light refresh may be due."""
        now = self._clock()
        if now - self._last_soft_sync_signal < SOFT_SYNC_SIGNAL_DEBOUNCE:
            return False
        self._last_soft_sync_signal = now

        last_sync = float(await self._store.get_one(LAST_SOFT_SYNC_KEY) or 0)
        if now - last_sync < SOFT_SYNC_THROTTLE:
            return False
        await self._store.set({SOFT_SYNC_NEEDED_KEY: now})
        return True

    # ── Background work ──

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Background discovery failed: %s", task.exception())

    async def wait_idle(self) -> None:
        """Wait for background work started by observations."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self._background.clear()

    def reset(self) -> None:
        self._last_soft_sync_signal = 0.0
