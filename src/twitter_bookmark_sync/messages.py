"""Request/response boundary between a UI host and the engine.

Messages are dicts with a ``type`` discriminator. Every handler returns
either ``{"data": ...}`` or ``{"error": code}`` where ``code`` is a stable
error code from errors.py. Handlers never raise SyncError to the caller.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict

from .engine import Engine
from .errors import SyncError, error_code
from .state import bookmark_to_dict

logger = logging.getLogger(__name__)

UNKNOWN_MESSAGE = "UNKNOWN_MESSAGE"

# Handlers that answer synchronously; every other one keeps the channel open.
_IMMEDIATE = frozenset({"CLOSE_AUTH_TAB", "REAUTH_STATUS", "RESET_SW_STATE"})

Handler = Callable[[dict], Awaitable[dict]]


def is_long_running(message_type: str) -> bool:
    """Whether a transport must keep the response channel open for this type."""
    return message_type in MessageRouter.TYPES and message_type not in _IMMEDIATE


def _field(message: dict, *names: str):
    for name in names:
        if name in message:
            return message[name]
    return None


class MessageRouter:
    TYPES = (
        "CHECK_AUTH",
        "START_AUTH_CAPTURE",
        "CLOSE_AUTH_TAB",
        "FETCH_BOOKMARKS",
        "FETCH_TWEET_DETAIL",
        "DELETE_BOOKMARK",
        "BOOKMARK_MUTATION",
        "DRAIN_BOOKMARK_EVENTS",
        "GET_BOOKMARK_EVENTS",
        "ACK_BOOKMARK_EVENTS",
        "STORE_QUERY_IDS",
        "REAUTH_STATUS",
        "RESET_SW_STATE",
    )

    def __init__(self, engine: Engine):
        self._engine = engine
        self._handlers: dict[str, Handler] = {
            name: getattr(self, f"_handle_{name.lower()}") for name in self.TYPES
        }

    async def handle(self, message: dict) -> dict:
        message_type = message.get("type") if isinstance(message, dict) else None
        handler = self._handlers.get(message_type)
        if handler is None:
            return {"error": UNKNOWN_MESSAGE}
        try:
            return await handler(message)
        except SyncError as e:
            logger.info("%s failed: %s", message_type, e)
            return {"error": error_code(e)}

    # ── Auth ──

    async def _handle_check_auth(self, message: dict) -> dict:
        return {"data": asdict(await self._engine.auth.check_auth())}

    async def _handle_start_auth_capture(self, message: dict) -> dict:
        tab = await self._engine.auth.start_auth_capture()
        return {"data": {"started": tab is not None}}

    async def _handle_close_auth_tab(self, message: dict) -> dict:
        await self._engine.auth.close_auth_tab()
        return {"data": {"ok": True}}

    async def _handle_reauth_status(self, message: dict) -> dict:
        return {"data": {"in_progress": self._engine.auth.reauth_in_progress}}

    # ── API ──

    async def _handle_fetch_bookmarks(self, message: dict) -> dict:
        count = _field(message, "count")
        page = await self._engine.client.fetch_bookmarks_page(
            cursor=_field(message, "cursor") or None,
            count=count if isinstance(count, int) and count > 0 else 100,
        )
        return {
            "data": {
                "bookmarks": [bookmark_to_dict(b) for b in page.bookmarks],
                "cursor": page.cursor,
                "stop_on_empty_response": page.stop_on_empty_response,
            }
        }

    async def _handle_fetch_tweet_detail(self, message: dict) -> dict:
        tweet_id = _field(message, "tweet_id", "tweetId") or ""
        detail = await self._engine.client.fetch_tweet_detail(tweet_id)
        return {
            "data": {
                "tweet_id": detail.tweet_id,
                "focal": bookmark_to_dict(detail.focal) if detail.focal else None,
                "thread": [bookmark_to_dict(t) for t in detail.thread],
            }
        }

    async def _handle_delete_bookmark(self, message: dict) -> dict:
        tweet_id = _field(message, "tweet_id", "tweetId") or ""
        response = await self._engine.client.delete_bookmark(tweet_id)
        return {"data": {"ok": response.ok, "errors": response.errors}}

    # ── Events ──

    async def _handle_bookmark_mutation(self, message: dict) -> dict:
        accepted = await self._engine.observer.on_bookmark_mutation_message(
            _field(message, "operation") or "",
            _field(message, "tweet_id", "tweetId"),
            _field(message, "source"),
        )
        return {"data": {"ok": accepted}}

    async def _handle_drain_bookmark_events(self, message: dict) -> dict:
        events = await self._engine.events.drain()
        return {"data": {"events": [e.to_dict() for e in events]}}

    async def _handle_get_bookmark_events(self, message: dict) -> dict:
        events = await self._engine.events.get()
        return {"data": {"events": [e.to_dict() for e in events]}}

    async def _handle_ack_bookmark_events(self, message: dict) -> dict:
        ids = _field(message, "ids")
        result = await self._engine.events.ack(ids if isinstance(ids, list) else [])
        return {"data": asdict(result)}

    async def _handle_store_query_ids(self, message: dict) -> dict:
        ids = _field(message, "ids")
        stored = await self._engine.observer.on_query_ids(ids if isinstance(ids, dict) else {})
        return {"data": {"stored": sorted(stored)}}

    async def _handle_reset_sw_state(self, message: dict) -> dict:
        await self._engine.reset()
        return {"data": {"ok": True}}
