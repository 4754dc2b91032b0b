"""Catalog of GraphQL endpoints observed on the wire.

Every ``/i/api/graphql/{queryId}/{operation}`` request the host site makes is
recorded here. The catalog is a discovery shortcut for the endpoint resolver
and a diagnostic trail when the API shape changes.

Observations mutate the in-memory catalog immediately; persistence is a
write-behind buffer flushed on a short trailing debounce, or explicitly via
``flush()`` / ``close()``.

Stored shape (under the ``graphql_catalog`` key):
    {
        "version": 1,
        "updated_at": 1739210000.0,
        "endpoints": {"Bookmarks:pLtjrO4ubNh996M_Cubwsg": {...}, ...}
    }
"""

import asyncio
import dataclasses
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import parse_qs, unquote, urlsplit

from .models import CatalogEntry
from .store import GRAPHQL_CATALOG_KEY, MemoryStore

logger = logging.getLogger(__name__)

CATALOG_VERSION = 1
MAX_GRAPHQL_ENDPOINTS = 300
MAX_CAPTURED_PARAM_LENGTH = 12000
CATALOG_FLUSH_DELAY = 0.6
GRAPHQL_ENDPOINT_RETENTION = 60 * 60 * 24 * 30

_GRAPHQL_PATH_RE = re.compile(r"/i/api/graphql/([^/]+)/([^/]+)")


@dataclass
class ParsedEndpoint:
    query_id: str
    operation: str
    path: str
    full_url: str
    variables: str | None = None
    features: str | None = None
    field_toggles: str | None = None


def trim_captured_param(value: str | None, limit: int = MAX_CAPTURED_PARAM_LENGTH) -> str | None:
    if not value:
        return None
    if len(value) <= limit:
        return value
    overflow = len(value) - limit
    return f"{value[:limit]}... [truncated {overflow} chars]"


def parse_graphql_endpoint(url: str) -> ParsedEndpoint | None:
    """Split an observed GraphQL URL into query id, operation and params."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    match = _GRAPHQL_PATH_RE.search(parts.path)
    if not match:
        return None

    params = parse_qs(parts.query)

    def param(name: str) -> str | None:
        values = params.get(name)
        return trim_captured_param(values[0]) if values else None

    return ParsedEndpoint(
        query_id=unquote(match.group(1)),
        operation=unquote(match.group(2)),
        path=parts.path,
        full_url=url,
        variables=param("variables"),
        features=param("features"),
        field_toggles=param("fieldToggles"),
    )


def _entry_from_dict(data: dict) -> CatalogEntry | None:
    try:
        return CatalogEntry(
            key=str(data["key"]),
            operation=str(data["operation"]),
            query_id=str(data["query_id"]),
            path=str(data.get("path", "")),
            first_seen=float(data.get("first_seen", 0)),
            last_seen=float(data.get("last_seen", 0)),
            seen_count=int(data.get("seen_count", 0)),
            methods=[str(m) for m in data.get("methods", [])],
            sample_url=str(data.get("sample_url", "")),
            sample_variables=data.get("sample_variables"),
            sample_features=data.get("sample_features"),
            sample_field_toggles=data.get("sample_field_toggles"),
        )
    except (KeyError, TypeError, ValueError):
        return None


class EndpointCatalog:
    def __init__(
        self,
        store: MemoryStore,
        max_entries: int = MAX_GRAPHQL_ENDPOINTS,
        flush_delay: float = CATALOG_FLUSH_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._max_entries = max_entries
        self._flush_delay = flush_delay
        self._clock = clock
        self._entries: dict[str, CatalogEntry] | None = None
        self._updated_at = 0.0
        self._load_lock = asyncio.Lock()
        self._dirty = False
        self._flush_handle: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task | None = None

    async def _load(self) -> dict[str, CatalogEntry]:
        if self._entries is not None:
            return self._entries
        async with self._load_lock:
            if self._entries is None:
                stored = await self._store.get_one(GRAPHQL_CATALOG_KEY)
                self._entries = self._decode(stored)
        return self._entries

    @staticmethod
    def _decode(stored: object) -> dict[str, CatalogEntry]:
        if not isinstance(stored, dict) or not isinstance(stored.get("endpoints"), dict):
            return {}
        entries = {}
        for key, raw in stored["endpoints"].items():
            entry = _entry_from_dict(raw) if isinstance(raw, dict) else None
            if entry is not None:
                entries[key] = entry
        return entries

    def _encode(self) -> dict:
        return {
            "version": CATALOG_VERSION,
            "updated_at": self._updated_at,
            "endpoints": {
                key: dataclasses.asdict(entry)
                for key, entry in (self._entries or {}).items()
            },
        }

    async def record(self, url: str, method: str | None = None) -> CatalogEntry | None:
        """Merge an observed request into the catalog."""
        parsed = parse_graphql_endpoint(url)
        if parsed is None:
            return None

        entries = await self._load()
        key = f"{parsed.operation}:{parsed.query_id}"
        now = self._clock()
        entry = entries.get(key)
        if entry is None:
            entry = CatalogEntry(
                key=key,
                operation=parsed.operation,
                query_id=parsed.query_id,
                path=parsed.path,
                first_seen=now,
                last_seen=now,
            )

        entry.last_seen = now
        entry.seen_count += 1
        entry.sample_url = parsed.full_url
        entry.path = parsed.path
        if method and method not in entry.methods:
            entry.methods.append(method)
        if parsed.variables:
            entry.sample_variables = parsed.variables
        if parsed.features:
            entry.sample_features = parsed.features
        if parsed.field_toggles:
            entry.sample_field_toggles = parsed.field_toggles

        entries[key] = entry
        self._updated_at = now
        self._enforce_limit()
        self._mark_dirty()
        return entry

    def _enforce_limit(self) -> None:
        entries = self._entries or {}
        overflow = len(entries) - self._max_entries
        if overflow <= 0:
            return
        oldest = sorted(entries.values(), key=lambda e: e.last_seen)[:overflow]
        for entry in oldest:
            del entries[entry.key]
        logger.debug("Evicted %d least-recently-seen catalog entries", overflow)

    async def entries(self) -> list[CatalogEntry]:
        return list((await self._load()).values())

    async def entries_for(self, operation: str) -> list[CatalogEntry]:
        """Entries for ``operation``, most recently seen first."""
        matches = [e for e in await self.entries() if e.operation == operation]
        return sorted(matches, key=lambda e: e.last_seen, reverse=True)

    async def find_query_id(self, operation: str) -> str | None:
        for entry in await self.entries_for(operation):
            if entry.query_id:
                return entry.query_id
        return None

    async def prune(self, now: float | None = None,
                    retention: float = GRAPHQL_ENDPOINT_RETENTION) -> int:
        """Drop entries last seen outside the retention window."""
        now = self._clock() if now is None else now
        entries = await self._load()
        cutoff = now - retention
        stale = [key for key, e in entries.items() if e.last_seen < cutoff]
        for key in stale:
            del entries[key]
        if stale:
            self._updated_at = now
            await self._write()
            logger.info("Pruned %d stale GraphQL catalog entries", len(stale))
        return len(stale)

    # ── Write-behind ──

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._flush_handle = loop.call_later(self._flush_delay, self._on_flush_timer)

    def _on_flush_timer(self) -> None:
        self._flush_handle = None
        self._flush_task = asyncio.get_running_loop().create_task(self.flush())

    async def flush(self) -> None:
        if not self._dirty or self._entries is None:
            return
        self._dirty = False
        try:
            await self._write()
        except OSError as e:
            # Stay dirty so the next observation retries.
            self._dirty = True
            logger.warning("GraphQL catalog flush failed: %s", e)

    async def _write(self) -> None:
        await self._store.set({GRAPHQL_CATALOG_KEY: self._encode()})

    async def close(self) -> None:
        """Cancel the pending timer and write any buffered changes."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        await self.flush()

    def reset(self) -> None:
        """Drop the in-memory catalog and any pending write."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._entries = None
        self._dirty = False
