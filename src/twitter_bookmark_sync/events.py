"""Bookmark mutation events observed outside the sync loop.

When the user bookmarks or unbookmarks a tweet on the host site, the
observer records a MutationEvent here. Consumers drain the queue between
syncs and apply it with resolve_bookmark_event_plan():

    DeleteBookmark with a tweet id  -> remove locally, no API call
    DeleteBookmark without an id    -> acked, next full sync cleans up
    CreateBookmark (any)            -> fetch one small page and merge

Events are stored as plain dicts under BOOKMARK_EVENTS_KEY, oldest first.
"""

import json
import logging
import random
import re
import string
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from urllib.parse import parse_qs

from .models import BookmarkEventPlan, EventType, MutationEvent
from .store import BOOKMARK_EVENTS_KEY, MemoryStore

logger = logging.getLogger(__name__)

MAX_BOOKMARK_EVENTS = 400
BOOKMARK_EVENT_RETENTION = 60 * 60 * 24 * 14
COALESCE_WINDOW = 1.0

_TWEET_ID_KEYS = ("tweet_id", "tweetId", "focalTweetId", "target_tweet_id", "targetTweetId")
_MUTATION_PATH_RE = re.compile(
    r"/i/api/graphql/([^/]+)/(DeleteBookmark|CreateBookmark)(?:\?|$)"
)
_REFERER_STATUS_RE = re.compile(r"/status/(\d+)")
_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class AckResult:
    removed: int
    remaining: int


@dataclass
class BookmarkMutation:
    query_id: str
    operation: EventType


def event_from_dict(data: object) -> MutationEvent | None:
    if not isinstance(data, dict):
        return None
    try:
        event_type = EventType(data.get("type"))
    except ValueError:
        return None
    tweet_id = data.get("tweet_id")
    return MutationEvent(
        id=str(data.get("id") or ""),
        type=event_type,
        tweet_id=tweet_id if isinstance(tweet_id, str) else "",
        at=float(data.get("at") or 0),
        source=str(data.get("source") or ""),
    )


class MutationEventQueue:
    """Persisted, capped, coalescing queue of bookmark mutation events."""

    def __init__(
        self,
        store: MemoryStore,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        max_events: int = MAX_BOOKMARK_EVENTS,
        coalesce_window: float = COALESCE_WINDOW,
    ):
        self._store = store
        self._clock = clock
        self._rng = rng or random.Random()
        self._max_events = max_events
        self._coalesce_window = coalesce_window

    async def _load_raw(self) -> list[dict]:
        stored = await self._store.get_one(BOOKMARK_EVENTS_KEY)
        if not isinstance(stored, list):
            return []
        return [e for e in stored if isinstance(e, dict)]

    def _new_id(self, now: float, event_type: EventType, tweet_id: str) -> str:
        suffix = "".join(self._rng.choice(_ID_ALPHABET) for _ in range(6))
        return f"{int(now * 1000)}-{event_type.value}-{tweet_id or 'unknown'}-{suffix}"

    async def record(
        self, event_type: EventType | str, tweet_id: str | None, source: str
    ) -> MutationEvent:
        """Append an event, replacing a same-action duplicate from the last second."""
        event_type = EventType(event_type)
        tweet_id = tweet_id if isinstance(tweet_id, str) else ""
        now = self._clock()

        existing = await self._load_raw()
        kept = [
            e
            for e in existing
            if not (
                e.get("tweet_id") == tweet_id
                and e.get("type") == event_type.value
                and now - float(e.get("at") or 0) < self._coalesce_window
            )
        ]
        event = MutationEvent(
            id=self._new_id(now, event_type, tweet_id),
            type=event_type,
            tweet_id=tweet_id,
            at=now,
            source=source,
        )
        kept.append(event.to_dict())
        if len(kept) > self._max_events:
            del kept[: len(kept) - self._max_events]

        await self._store.set({BOOKMARK_EVENTS_KEY: kept})
        logger.debug(
            "Recorded %s for %s from %s", event_type.value, tweet_id or "unknown", source
        )
        return event

    async def get(self) -> list[MutationEvent]:
        """Queued events, oldest first. Does not consume them."""
        events = [event_from_dict(e) for e in await self._load_raw()]
        return [e for e in events if e is not None]

    async def drain(self) -> list[MutationEvent]:
        """Return every queued event and clear the queue."""
        events = await self.get()
        if events:
            await self._store.set({BOOKMARK_EVENTS_KEY: []})
        return events

    async def ack(self, ids: Iterable[str]) -> AckResult:
        ack_set = {i for i in ids if isinstance(i, str) and i}
        if not ack_set:
            return AckResult(removed=0, remaining=0)

        existing = await self._load_raw()
        kept = [e for e in existing if not (e.get("id") and e["id"] in ack_set)]
        await self._store.set({BOOKMARK_EVENTS_KEY: kept})
        return AckResult(removed=len(existing) - len(kept), remaining=len(kept))

    async def prune(
        self, now: float | None = None, retention: float = BOOKMARK_EVENT_RETENTION
    ) -> int:
        """Drop events older than the retention window."""
        now = self._clock() if now is None else now
        cutoff = now - retention
        existing = await self._load_raw()
        kept = [e for e in existing if float(e.get("at") or 0) >= cutoff]
        removed = len(existing) - len(kept)
        if removed:
            await self._store.set({BOOKMARK_EVENTS_KEY: kept})
            logger.info("Pruned %d expired bookmark event(s)", removed)
        return removed


def resolve_bookmark_event_plan(events: Iterable[MutationEvent]) -> BookmarkEventPlan:
    """Decide what a batch of drained events requires. Pure."""
    events = list(events)
    if not events:
        return BookmarkEventPlan()

    ids_to_delete = list(
        dict.fromkeys(
            e.tweet_id for e in events if e.type is EventType.DELETE and e.tweet_id
        )
    )
    return BookmarkEventPlan(
        ids_to_delete=ids_to_delete,
        needs_page_fetch=any(e.type is EventType.CREATE for e in events),
        ack_ids=[e.id for e in events],
    )


# ── Tweet id extraction from observed requests ──


def parse_json_maybe(value: object) -> object:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed.startswith(("{", "[")):
        return None
    try:
        return json.loads(trimmed)
    except ValueError:
        return None


def tweet_id_from_variables(variables: object) -> str | None:
    if not isinstance(variables, dict):
        return None
    for key in _TWEET_ID_KEYS:
        value = variables.get(key)
        if value:
            return value if isinstance(value, str) else None
    return None


def _first(values: object) -> str | None:
    if isinstance(values, list) and values and isinstance(values[0], str) and values[0]:
        return values[0]
    return None


def extract_tweet_id_from_body(
    form_data: Mapping[str, list[str]] | None = None,
    raw: Iterable[bytes] | None = None,
) -> str | None:
    """Best-effort tweet id from a mutation request body.

    ``form_data`` is a parsed form body (name -> values); ``raw`` are the
    undecoded body parts. Tries direct form fields, form ``variables`` JSON,
    a JSON body (``variables.*`` then top level) and finally an urlencoded
    body.
    """
    if form_data:
        direct = _first(form_data.get("tweet_id")) or _first(form_data.get("tweetId"))
        if direct:
            return direct
        tweet_id = tweet_id_from_variables(parse_json_maybe(_first(form_data.get("variables"))))
        if tweet_id:
            return tweet_id

    for part in raw or ():
        try:
            text = part.decode("utf-8").strip()
        except UnicodeDecodeError:
            continue
        if not text:
            continue

        parsed = parse_json_maybe(text)
        if isinstance(parsed, dict):
            tweet_id = tweet_id_from_variables(parsed.get("variables")) or tweet_id_from_variables(parsed)
            if tweet_id:
                return tweet_id

        query = parse_qs(text)
        tweet_id = tweet_id_from_variables(parse_json_maybe(_first(query.get("variables"))))
        if tweet_id:
            return tweet_id
        direct = _first(query.get("tweet_id")) or _first(query.get("tweetId"))
        if direct:
            return direct

    return None


def parse_bookmark_mutation(url: str) -> BookmarkMutation | None:
    match = _MUTATION_PATH_RE.search(url or "")
    if not match:
        return None
    return BookmarkMutation(query_id=match.group(1), operation=EventType(match.group(2)))


def extract_tweet_id_from_referer(referer: str | None) -> str | None:
    if not referer:
        return None
    match = _REFERER_STATUS_RE.search(referer)
    return match.group(1) if match else None
