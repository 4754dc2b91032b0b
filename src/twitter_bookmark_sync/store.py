"""Key-value credential store.

Holds captured auth headers, resolved query IDs, the GraphQL endpoint
catalog, the bookmark event queue and sync watermarks. Values must be
JSON-serializable.

JsonFileStore keeps everything in a single JSON object on disk:
    {
        "auth_headers": {"authorization": "...", ...},
        "auth_time": 1739210000.0,
        "query_id": "pLtjrO4ubNh996M_Cubwsg",
        ...
    }
"""

import copy
import json
import logging
import os
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Session
AUTH_HEADERS_KEY = "auth_headers"
AUTH_TIME_KEY = "auth_time"
USER_ID_KEY = "user_id"
AUTH_STATE_KEYS = (USER_ID_KEY, AUTH_HEADERS_KEY, AUTH_TIME_KEY)

# Endpoints
FEATURES_KEY = "features"
GRAPHQL_CATALOG_KEY = "graphql_catalog"
QUERY_ID_KEYS = {
    "Bookmarks": "query_id",
    "TweetDetail": "detail_query_id",
    "DeleteBookmark": "delete_query_id",
    "CreateBookmark": "create_query_id",
}

# Events and diagnostics
BOOKMARK_EVENTS_KEY = "bookmark_events"
LAST_MUTATION_KEY = "last_mutation"
LAST_MUTATION_DONE_KEY = "last_mutation_done"

# Sync watermarks
LAST_SYNC_KEY = "last_sync"
LAST_RECONCILE_KEY = "last_reconcile"
LAST_SOFT_SYNC_KEY = "last_soft_sync"
SOFT_SYNC_NEEDED_KEY = "soft_sync_needed"
CLEANUP_AT_KEY = "cleanup_at"

Changes = dict[str, Any]
Listener = Callable[[Changes], None]


class MemoryStore:
    """In-process store. Also the base for JsonFileStore."""

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})
        self._listeners: list[Listener] = []

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the stored values for ``keys``; missing keys are omitted."""
        return {
            key: copy.deepcopy(self._data[key])
            for key in keys
            if key in self._data
        }

    async def get_one(self, key: str, default: Any = None) -> Any:
        values = await self.get([key])
        return values.get(key, default)

    async def set(self, items: Mapping[str, Any]) -> None:
        """Write all ``items`` at once and notify watchers."""
        if not items:
            return
        for key, value in items.items():
            self._data[key] = copy.deepcopy(value)
        self._persist()
        self._notify({key: copy.deepcopy(value) for key, value in items.items()})

    async def remove(self, keys: Iterable[str]) -> None:
        removed = [key for key in keys if key in self._data]
        if not removed:
            return
        for key in removed:
            del self._data[key]
        self._persist()
        self._notify({key: None for key in removed})

    async def clear(self) -> None:
        keys = list(self._data)
        self._data.clear()
        self._persist()
        if keys:
            self._notify({key: None for key in keys})

    def watch(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, changes: Changes) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception:
                logger.exception("Store listener failed")

    def _persist(self) -> None:
        pass


class JsonFileStore(MemoryStore):
    """Store persisted to a JSON file, rewritten on every change."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(self._load())

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            logger.info("No existing store at %s. Starting fresh.", self.path)
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable store %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed store %s", self.path)
            return {}
        return data

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)
        # Contains auth headers
        os.chmod(self.path, 0o600)
