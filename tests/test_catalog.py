"""Tests for the observed GraphQL endpoint catalog."""

import asyncio

import pytest

from twitter_bookmark_sync.catalog import (
    EndpointCatalog,
    parse_graphql_endpoint,
    trim_captured_param,
)
from twitter_bookmark_sync.store import GRAPHQL_CATALOG_KEY

BOOKMARKS_URL = (
    "https://x.com/i/api/graphql/abc123/Bookmarks"
    "?variables=%7B%22count%22%3A20%7D&features=%7B%22a%22%3Atrue%7D"
)


class TestParseGraphqlEndpoint:
    def test_parses_query_id_operation_and_params(self):
        parsed = parse_graphql_endpoint(BOOKMARKS_URL)
        assert parsed.query_id == "abc123"
        assert parsed.operation == "Bookmarks"
        assert parsed.path == "/i/api/graphql/abc123/Bookmarks"
        assert parsed.variables == '{"count":20}'
        assert parsed.features == '{"a":true}'
        assert parsed.field_toggles is None

    def test_non_graphql_url(self):
        assert parse_graphql_endpoint("https://x.com/home") is None

    def test_trim_long_param(self):
        trimmed = trim_captured_param("x" * 15, limit=10)
        assert trimmed == "xxxxxxxxxx... [truncated 5 chars]"
        assert trim_captured_param("short", limit=10) == "short"
        assert trim_captured_param("") is None


class TestEndpointCatalog:
    @pytest.mark.asyncio
    async def test_record_merges_repeat_observations(self, store, clock):
        catalog = EndpointCatalog(store, clock=clock)
        await catalog.record(BOOKMARKS_URL, "GET")
        clock.advance(5)
        entry = await catalog.record(
            "https://x.com/i/api/graphql/abc123/Bookmarks", "POST"
        )

        assert entry.key == "Bookmarks:abc123"
        assert entry.seen_count == 2
        assert entry.methods == ["GET", "POST"]
        assert entry.first_seen == clock() - 5
        assert entry.last_seen == clock()
        # Samples survive an observation without params
        assert entry.sample_variables == '{"count":20}'
        assert len(await catalog.entries()) == 1

    @pytest.mark.asyncio
    async def test_record_ignores_non_graphql(self, store):
        catalog = EndpointCatalog(store)
        assert await catalog.record("https://x.com/i/bookmarks") is None
        assert await catalog.entries() == []

    @pytest.mark.asyncio
    async def test_evicts_least_recently_seen(self, store, clock):
        catalog = EndpointCatalog(store, max_entries=2, clock=clock)
        for op in ("A", "B", "C"):
            await catalog.record(f"https://x.com/i/api/graphql/q{op}/{op}")
            clock.advance(1)

        keys = {e.key for e in await catalog.entries()}
        assert keys == {"B:qB", "C:qC"}

    @pytest.mark.asyncio
    async def test_find_query_id_prefers_most_recent(self, store, clock):
        catalog = EndpointCatalog(store, clock=clock)
        await catalog.record("https://x.com/i/api/graphql/old/Bookmarks")
        clock.advance(10)
        await catalog.record("https://x.com/i/api/graphql/new/Bookmarks")

        assert await catalog.find_query_id("Bookmarks") == "new"
        assert await catalog.find_query_id("TweetDetail") is None

    @pytest.mark.asyncio
    async def test_write_behind_flush(self, store):
        catalog = EndpointCatalog(store, flush_delay=0.01)
        await catalog.record(BOOKMARKS_URL)
        assert await store.get_one(GRAPHQL_CATALOG_KEY) is None

        await asyncio.sleep(0.05)
        stored = await store.get_one(GRAPHQL_CATALOG_KEY)
        assert stored["version"] == 1
        assert "Bookmarks:abc123" in stored["endpoints"]

    @pytest.mark.asyncio
    async def test_close_flushes_pending_writes(self, store):
        catalog = EndpointCatalog(store, flush_delay=60)
        await catalog.record(BOOKMARKS_URL)
        await catalog.close()

        stored = await store.get_one(GRAPHQL_CATALOG_KEY)
        assert list(stored["endpoints"]) == ["Bookmarks:abc123"]

    @pytest.mark.asyncio
    async def test_loads_persisted_catalog(self, store, clock):
        first = EndpointCatalog(store, clock=clock)
        await first.record(BOOKMARKS_URL, "GET")
        await first.close()

        second = EndpointCatalog(store, clock=clock)
        [entry] = await second.entries()
        assert entry.query_id == "abc123"
        assert entry.methods == ["GET"]

    @pytest.mark.asyncio
    async def test_prune_drops_expired_entries(self, store, clock):
        catalog = EndpointCatalog(store, clock=clock)
        await catalog.record("https://x.com/i/api/graphql/q1/Old")
        clock.advance(31 * 24 * 3600)
        await catalog.record("https://x.com/i/api/graphql/q2/Fresh")

        assert await catalog.prune() == 1
        assert [e.operation for e in await catalog.entries()] == ["Fresh"]
        stored = await store.get_one(GRAPHQL_CATALOG_KEY)
        assert list(stored["endpoints"]) == ["Fresh:q2"]
        await catalog.close()
