"""One long-lived engine instance wiring every component together.

An embedding host (a browser bridge, a test harness) feeds observed traffic
to ``engine.observer`` and requests to ``MessageRouter(engine)``. The CLI
builds one from the config file with ``Engine.from_config``.
"""

import logging
import time
from collections.abc import Callable
from pathlib import Path

import httpx

from .auth import AuthSessionManager, BackgroundTabOpener, CookieReader, cookie_session_headers
from .catalog import EndpointCatalog
from .client import BEARER_TOKEN, TwitterClient, new_http_client
from .config import AppConfig
from .discovery import BundleDiscovery, DiscoveryStrategy
from .events import MutationEventQueue
from .fetch_queue import PacingConfig
from .maintenance import CleanupReport, run_weekly_cleanup
from .observer import TrafficObserver
from .resolver import EndpointResolver, storage_key_for
from .state import BookmarkRepository, JsonBookmarkRepository
from .store import JsonFileStore, MemoryStore
from .sync import BookmarkSync, SyncSettings

logger = logging.getLogger(__name__)

STORE_FILENAME = "store.json"


class Engine:
    def __init__(
        self,
        store: MemoryStore,
        repository: BookmarkRepository,
        http: httpx.AsyncClient | None = None,
        cookie_reader: CookieReader | None = None,
        tab_opener: BackgroundTabOpener | None = None,
        discovery: DiscoveryStrategy | None = None,
        pacing: PacingConfig | None = None,
        sync_settings: SyncSettings | None = None,
        capture_raw: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self._owns_http = http is None
        self.http = http or new_http_client()
        self.store = store
        self.repository = repository
        self._clock = clock

        self.auth = AuthSessionManager(
            store, cookie_reader=cookie_reader, tab_opener=tab_opener, clock=clock
        )
        self.catalog = EndpointCatalog(store, clock=clock)
        self.resolver = EndpointResolver(
            store, self.catalog, discovery or BundleDiscovery(self.http), clock=clock
        )
        self.client = TwitterClient(
            self.auth, self.resolver, store, http=self.http, capture_raw=capture_raw
        )
        self.events = MutationEventQueue(store, clock=clock)
        self.observer = TrafficObserver(
            self.auth, self.resolver, self.catalog, self.events, store, clock=clock
        )
        self.sync = BookmarkSync(
            self.client,
            repository,
            store,
            self.events,
            settings=sync_settings,
            pacing=pacing,
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        http: httpx.AsyncClient | None = None,
        capture_raw: bool = False,
    ) -> "Engine":
        state_dir = Path(config.state_dir)
        twid = config.auth.twid

        async def read_twid() -> str | None:
            return twid

        return cls(
            store=JsonFileStore(state_dir / STORE_FILENAME),
            repository=JsonBookmarkRepository(state_dir),
            http=http,
            cookie_reader=read_twid if twid else None,
            pacing=config.fetch.pacing(),
            sync_settings=config.sync.settings(),
            capture_raw=capture_raw,
        )

    async def seed_from_config(self, config: AppConfig) -> None:
        """Use the configured cookies and query ID only where nothing is stored yet.

        A query ID healed by rediscovery outlives the configured one.
        """
        if not await self.auth.has_valid_session():
            await self.auth.capture_from_observed_headers(
                cookie_session_headers(
                    config.auth.auth_token, config.auth.ct0, BEARER_TOKEN, config.auth.twid
                )
            )
        if config.query_id and not await self.store.get_one(storage_key_for("Bookmarks")):
            await self.resolver.store_query_ids({"Bookmarks": config.query_id})

    async def run_maintenance(self) -> CleanupReport:
        return await run_weekly_cleanup(self.store, self.catalog, self.events, now=self._clock())

    async def reset(self) -> None:
        """Drop in-process caches and guards after flushing buffered catalog writes."""
        await self.auth.close_auth_tab()
        self.auth.reset()
        await self.catalog.close()
        self.catalog.reset()
        self.resolver.reset()
        self.observer.reset()

    async def forget_everything(self) -> None:
        """Clear the credential store and local bookmarks."""
        await self.reset()
        await self.store.clear()
        await self.repository.clear()
        logger.info("Cleared stored session, query IDs and bookmarks")

    async def close(self) -> None:
        await self.observer.close()
        await self.catalog.close()
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
