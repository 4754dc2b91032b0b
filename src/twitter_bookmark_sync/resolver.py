"""Resolve GraphQL query IDs through a layered fallback chain.

Query IDs are undocumented and rotate without notice. Resolution tries, in
order, stopping at the first hit:

    1. in-memory cache (short TTL)
    2. durable per-operation slot in the store (filled by passive capture)
    3. the endpoint catalog
    4. live discovery from the host's JS bundles

Hits from stages 3 and 4 are written back into stages 1 and 2.
"""

import logging
import time
from collections.abc import Callable

from .catalog import EndpointCatalog
from .discovery import DiscoveryStrategy
from .models import ResolvedEndpoint
from .store import QUERY_ID_KEYS, MemoryStore

logger = logging.getLogger(__name__)

QUERY_ID_TTL = 10 * 60

# Operations discovered proactively once a session is captured
PROACTIVE_OPERATIONS = ("DeleteBookmark", "CreateBookmark", "TweetDetail")


def storage_key_for(operation: str) -> str:
    return QUERY_ID_KEYS.get(operation, f"query_id:{operation}")


class EndpointResolver:
    def __init__(
        self,
        store: MemoryStore,
        catalog: EndpointCatalog,
        discovery: DiscoveryStrategy,
        ttl: float = QUERY_ID_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._catalog = catalog
        self._discovery = discovery
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[str, ResolvedEndpoint] = {}
        self._discovery_in_progress = False

    def _remember(self, operation: str, query_id: str) -> None:
        self._cache[operation] = ResolvedEndpoint(
            operation_name=operation, query_id=query_id, resolved_at=self._clock()
        )

    def cached(self, operation: str) -> str | None:
        entry = self._cache.get(operation)
        if entry and self._clock() - entry.resolved_at < self._ttl:
            return entry.query_id
        return None

    async def _discover(self, operation: str) -> str | None:
        try:
            return await self._discovery.discover(operation)
        except Exception:
            logger.exception("Query ID discovery for %s failed", operation)
            return None

    async def resolve(self, operation: str, storage_key: str | None = None) -> str | None:
        storage_key = storage_key or storage_key_for(operation)

        query_id = self.cached(operation)
        if query_id:
            return query_id

        stored = await self._store.get_one(storage_key)
        if isinstance(stored, str) and stored:
            self._remember(operation, stored)
            return stored

        query_id = await self._catalog.find_query_id(operation)
        if query_id:
            logger.debug("Resolved %s from endpoint catalog", operation)
        else:
            query_id = await self._discover(operation)

        if query_id:
            self._remember(operation, query_id)
            await self._store.set({storage_key: query_id})
            return query_id

        logger.warning("No query ID available for %s", operation)
        return None

    async def force_rediscover(
        self, operation: str, storage_key: str | None = None
    ) -> str | None:
        """Drop known-stale values and run live discovery only."""
        storage_key = storage_key or storage_key_for(operation)
        self.invalidate(operation)
        await self._store.remove([storage_key])

        fresh = await self._discover(operation)
        if fresh:
            logger.info("Rediscovered query ID for %s", operation)
            self._remember(operation, fresh)
            await self._store.set({storage_key: fresh})
        return fresh

    def invalidate(self, operation: str) -> None:
        self._cache.pop(operation, None)

    async def store_query_ids(self, ids: dict[str, str]) -> dict[str, str]:
        """Persist query ids reported by passive observers."""
        updates = {
            storage_key_for(operation): query_id
            for operation, query_id in ids.items()
            if operation in QUERY_ID_KEYS and isinstance(query_id, str) and query_id
        }
        if updates:
            await self._store.set(updates)
        return updates

    async def discover_all_missing(
        self, operations: tuple[str, ...] = PROACTIVE_OPERATIONS
    ) -> dict[str, str]:
        """Fill every missing durable slot: catalog first, then one bundle pass."""
        if self._discovery_in_progress:
            return {}
        self._discovery_in_progress = True
        try:
            keys = {op: storage_key_for(op) for op in operations}
            stored = await self._store.get(keys.values())
            missing = [op for op in operations if not stored.get(keys[op])]
            if not missing:
                return {}

            updates: dict[str, str] = {}
            still_missing = []
            for op in missing:
                query_id = await self._catalog.find_query_id(op)
                if query_id:
                    updates[op] = query_id
                else:
                    still_missing.append(op)

            if still_missing:
                try:
                    updates.update(await self._discovery.discover_many(still_missing))
                except Exception:
                    logger.exception("Batch query ID discovery failed")

            if updates:
                await self._store.set({keys[op]: qid for op, qid in updates.items()})
            return updates
        finally:
            self._discovery_in_progress = False

    def reset(self) -> None:
        self._cache.clear()
        self._discovery_in_progress = False
