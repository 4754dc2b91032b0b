"""Tests for the bookmark mutation event queue."""

import random

import pytest

from twitter_bookmark_sync.events import (
    MutationEventQueue,
    extract_tweet_id_from_body,
    extract_tweet_id_from_referer,
    parse_bookmark_mutation,
    resolve_bookmark_event_plan,
)
from twitter_bookmark_sync.models import EventType, MutationEvent
from twitter_bookmark_sync.store import BOOKMARK_EVENTS_KEY


@pytest.fixture
def queue(store, clock):
    return MutationEventQueue(store, clock=clock, rng=random.Random(0))


def event(event_id, event_type, tweet_id=""):
    return MutationEvent(id=event_id, type=event_type, tweet_id=tweet_id, at=0, source="test")


class TestRecord:
    @pytest.mark.asyncio
    async def test_record_appends_in_order(self, queue, clock):
        await queue.record(EventType.DELETE, "1", "x.com")
        clock.advance(2)
        await queue.record("CreateBookmark", "", "x.com-completed")

        events = await queue.get()
        assert [(e.type, e.tweet_id) for e in events] == [
            (EventType.DELETE, "1"),
            (EventType.CREATE, ""),
        ]

    @pytest.mark.asyncio
    async def test_event_id_format(self, queue, clock):
        recorded = await queue.record(EventType.DELETE, None, "x.com")
        prefix = f"{int(clock() * 1000)}-DeleteBookmark-unknown-"
        assert recorded.id.startswith(prefix)
        assert len(recorded.id) == len(prefix) + 6

    @pytest.mark.asyncio
    async def test_coalesces_duplicates_within_window(self, queue, clock):
        await queue.record(EventType.DELETE, "1", "x.com-headers")
        clock.advance(0.5)
        await queue.record(EventType.DELETE, "1", "x.com")

        events = await queue.get()
        assert len(events) == 1
        assert events[0].source == "x.com"

    @pytest.mark.asyncio
    async def test_keeps_duplicates_outside_window(self, queue, clock):
        await queue.record(EventType.DELETE, "1", "x.com")
        clock.advance(1.5)
        await queue.record(EventType.DELETE, "1", "x.com")
        assert len(await queue.get()) == 2

    @pytest.mark.asyncio
    async def test_different_tweets_do_not_coalesce(self, queue):
        await queue.record(EventType.DELETE, "1", "x.com")
        await queue.record(EventType.DELETE, "2", "x.com")
        await queue.record(EventType.CREATE, "1", "x.com")
        assert len(await queue.get()) == 3

    @pytest.mark.asyncio
    async def test_cap_drops_oldest(self, store, clock):
        queue = MutationEventQueue(store, clock=clock, max_events=3)
        for i in range(5):
            await queue.record(EventType.DELETE, str(i), "x.com")
            clock.advance(2)

        assert [e.tweet_id for e in await queue.get()] == ["2", "3", "4"]


class TestConsume:
    @pytest.mark.asyncio
    async def test_get_does_not_consume(self, queue):
        await queue.record(EventType.DELETE, "1", "x.com")
        await queue.get()
        assert len(await queue.get()) == 1

    @pytest.mark.asyncio
    async def test_drain_empties_queue(self, queue, store):
        await queue.record(EventType.DELETE, "1", "x.com")
        drained = await queue.drain()
        assert [e.tweet_id for e in drained] == ["1"]
        assert await queue.get() == []
        assert await store.get_one(BOOKMARK_EVENTS_KEY) == []

    @pytest.mark.asyncio
    async def test_ack_removes_only_listed_ids(self, queue, clock):
        first = await queue.record(EventType.DELETE, "1", "x.com")
        await queue.record(EventType.DELETE, "2", "x.com")

        result = await queue.ack([first.id, "no-such-id"])
        assert (result.removed, result.remaining) == (1, 1)
        assert [e.tweet_id for e in await queue.get()] == ["2"]

    @pytest.mark.asyncio
    async def test_ack_with_nothing(self, queue):
        await queue.record(EventType.DELETE, "1", "x.com")
        result = await queue.ack([])
        assert (result.removed, result.remaining) == (0, 0)
        assert len(await queue.get()) == 1

    @pytest.mark.asyncio
    async def test_prune_drops_expired(self, queue, clock):
        await queue.record(EventType.DELETE, "old", "x.com")
        clock.advance(15 * 24 * 3600)
        await queue.record(EventType.DELETE, "new", "x.com")

        assert await queue.prune() == 1
        assert [e.tweet_id for e in await queue.get()] == ["new"]

    @pytest.mark.asyncio
    async def test_ignores_malformed_stored_events(self, store, queue):
        await store.set(
            {
                BOOKMARK_EVENTS_KEY: [
                    {"id": "a", "type": "DeleteBookmark", "tweet_id": "1", "at": 1},
                    {"id": "b", "type": "LikeTweet"},
                    "garbage",
                ]
            }
        )
        assert [e.id for e in await queue.get()] == ["a"]


class TestEventPlan:
    def test_empty(self):
        plan = resolve_bookmark_event_plan([])
        assert plan.ids_to_delete == []
        assert plan.needs_page_fetch is False
        assert plan.ack_ids == []

    def test_deletes_only(self):
        plan = resolve_bookmark_event_plan(
            [
                event("a", EventType.DELETE, "1"),
                event("b", EventType.DELETE, "1"),
                event("c", EventType.DELETE, ""),
            ]
        )
        assert plan.ids_to_delete == ["1"]
        assert plan.needs_page_fetch is False
        assert plan.ack_ids == ["a", "b", "c"]

    def test_create_needs_page_fetch(self):
        plan = resolve_bookmark_event_plan(
            [event("a", EventType.CREATE), event("b", EventType.DELETE, "2")]
        )
        assert plan.ids_to_delete == ["2"]
        assert plan.needs_page_fetch is True
        assert plan.ack_ids == ["a", "b"]


class TestRequestParsing:
    def test_parse_bookmark_mutation(self):
        parsed = parse_bookmark_mutation("https://x.com/i/api/graphql/Wlmlj2/DeleteBookmark")
        assert parsed.query_id == "Wlmlj2"
        assert parsed.operation is EventType.DELETE

        parsed = parse_bookmark_mutation("https://x.com/i/api/graphql/aoDb/CreateBookmark?x=1")
        assert parsed.operation is EventType.CREATE

    def test_parse_other_operations(self):
        assert parse_bookmark_mutation("https://x.com/i/api/graphql/q/Bookmarks") is None
        assert parse_bookmark_mutation("https://x.com/i/api/graphql/q/DeleteBookmarkFolder") is None
        assert parse_bookmark_mutation("") is None

    def test_tweet_id_from_form_fields(self):
        assert extract_tweet_id_from_body({"tweet_id": ["123"]}) == "123"
        assert extract_tweet_id_from_body({"variables": ['{"tweetId": "456"}']}) == "456"

    def test_tweet_id_from_json_body(self):
        body = b'{"variables": {"tweet_id": "789"}, "queryId": "q"}'
        assert extract_tweet_id_from_body(raw=[body]) == "789"
        assert extract_tweet_id_from_body(raw=[b'{"focalTweetId": "321"}']) == "321"

    def test_tweet_id_from_urlencoded_body(self):
        body = b"variables=%7B%22tweet_id%22%3A%22999%22%7D"
        assert extract_tweet_id_from_body(raw=[body]) == "999"
        assert extract_tweet_id_from_body(raw=[b"tweetId=555"]) == "555"

    def test_tweet_id_missing(self):
        assert extract_tweet_id_from_body() is None
        assert extract_tweet_id_from_body({"other": ["x"]}, [b"\xff\xfe", b"not json"]) is None

    def test_tweet_id_from_referer(self):
        assert extract_tweet_id_from_referer("https://x.com/someone/status/1234?s=20") == "1234"
        assert extract_tweet_id_from_referer("https://x.com/home") is None
        assert extract_tweet_id_from_referer(None) is None
