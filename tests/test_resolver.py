"""Tests for layered query ID resolution."""

import pytest

from twitter_bookmark_sync.catalog import EndpointCatalog
from twitter_bookmark_sync.resolver import EndpointResolver, storage_key_for

from conftest import FakeDiscovery


@pytest.fixture
def catalog(store, clock):
    return EndpointCatalog(store, clock=clock)


def make_resolver(store, catalog, clock, found=None):
    discovery = FakeDiscovery(found)
    return EndpointResolver(store, catalog, discovery, clock=clock), discovery


class TestStorageKey:
    def test_known_operations(self):
        assert storage_key_for("Bookmarks") == "query_id"
        assert storage_key_for("TweetDetail") == "detail_query_id"
        assert storage_key_for("DeleteBookmark") == "delete_query_id"

    def test_unknown_operation(self):
        assert storage_key_for("Likes") == "query_id:Likes"


class TestResolve:
    @pytest.mark.asyncio
    async def test_stored_value_skips_discovery(self, store, catalog, clock):
        await store.set({"query_id": "stored"})
        resolver, discovery = make_resolver(store, catalog, clock, {"Bookmarks": "live"})

        assert await resolver.resolve("Bookmarks") == "stored"
        assert discovery.calls == []

    @pytest.mark.asyncio
    async def test_catalog_hit_is_written_back(self, store, catalog, clock):
        await catalog.record("https://x.com/i/api/graphql/fromCatalog/TweetDetail")
        resolver, discovery = make_resolver(store, catalog, clock)

        assert await resolver.resolve("TweetDetail") == "fromCatalog"
        assert await store.get_one("detail_query_id") == "fromCatalog"
        assert discovery.calls == []
        await catalog.close()

    @pytest.mark.asyncio
    async def test_discovery_is_last_resort(self, store, catalog, clock):
        resolver, discovery = make_resolver(
            store, catalog, clock, {"DeleteBookmark": "discovered"}
        )

        assert await resolver.resolve("DeleteBookmark") == "discovered"
        assert discovery.calls == ["DeleteBookmark"]
        assert await store.get_one("delete_query_id") == "discovered"

    @pytest.mark.asyncio
    async def test_unresolved_returns_none(self, store, catalog, clock):
        resolver, _ = make_resolver(store, catalog, clock)
        assert await resolver.resolve("Bookmarks") is None

    @pytest.mark.asyncio
    async def test_memory_cache_expires(self, store, catalog, clock):
        await store.set({"query_id": "first"})
        resolver, _ = make_resolver(store, catalog, clock)
        assert await resolver.resolve("Bookmarks") == "first"

        await store.set({"query_id": "second"})
        assert await resolver.resolve("Bookmarks") == "first"

        clock.advance(601)
        assert await resolver.resolve("Bookmarks") == "second"


class TestForceRediscover:
    @pytest.mark.asyncio
    async def test_replaces_stale_value(self, store, catalog, clock):
        await store.set({"query_id": "stale"})
        resolver, discovery = make_resolver(store, catalog, clock, {"Bookmarks": "fresh"})
        await resolver.resolve("Bookmarks")

        assert await resolver.force_rediscover("Bookmarks") == "fresh"
        assert await store.get_one("query_id") == "fresh"
        assert resolver.cached("Bookmarks") == "fresh"
        assert discovery.calls == ["Bookmarks"]

    @pytest.mark.asyncio
    async def test_failure_leaves_slot_empty(self, store, catalog, clock):
        await store.set({"query_id": "stale"})
        resolver, _ = make_resolver(store, catalog, clock)

        assert await resolver.force_rediscover("Bookmarks") is None
        assert await store.get_one("query_id") is None
        assert resolver.cached("Bookmarks") is None


class TestStoreQueryIds:
    @pytest.mark.asyncio
    async def test_only_known_operations_are_stored(self, store, catalog, clock):
        resolver, _ = make_resolver(store, catalog, clock)
        updates = await resolver.store_query_ids(
            {"Bookmarks": "b1", "TweetDetail": "", "Likes": "l1"}
        )
        assert updates == {"query_id": "b1"}
        assert await store.get_one("query_id:Likes") is None


class TestDiscoverAllMissing:
    @pytest.mark.asyncio
    async def test_fills_only_missing_slots(self, store, catalog, clock):
        await store.set({"detail_query_id": "known"})
        await catalog.record("https://x.com/i/api/graphql/createQ/CreateBookmark")
        resolver, discovery = make_resolver(
            store, catalog, clock, {"DeleteBookmark": "deleteQ"}
        )

        found = await resolver.discover_all_missing()

        assert found == {"CreateBookmark": "createQ", "DeleteBookmark": "deleteQ"}
        assert discovery.calls == ["DeleteBookmark"]
        assert await store.get_one("create_query_id") == "createQ"
        assert await store.get_one("delete_query_id") == "deleteQ"
        await catalog.close()

    @pytest.mark.asyncio
    async def test_nothing_missing(self, store, catalog, clock):
        await store.set(
            {"detail_query_id": "a", "create_query_id": "b", "delete_query_id": "c"}
        )
        resolver, discovery = make_resolver(store, catalog, clock)
        assert await resolver.discover_all_missing() == {}
        assert discovery.calls == []
