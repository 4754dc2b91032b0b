"""Tests for engine wiring, config seeding and reset."""

import pytest

from twitter_bookmark_sync.catalog import EndpointCatalog
from twitter_bookmark_sync.config import AppConfig, AuthConfig
from twitter_bookmark_sync.engine import Engine
from twitter_bookmark_sync.messages import MessageRouter
from twitter_bookmark_sync.state import JsonBookmarkRepository
from twitter_bookmark_sync.store import AUTH_HEADERS_KEY, GRAPHQL_CATALOG_KEY

from conftest import FakeDiscovery

OBSERVED_URL = (
    "https://x.com/i/api/graphql/abcdefghijk/Bookmarks"
    "?variables=%7B%22count%22%3A20%7D"
)


def make_engine(store, tmp_path, clock) -> Engine:
    return Engine(
        store,
        JsonBookmarkRepository(tmp_path / ".state"),
        discovery=FakeDiscovery(),
        clock=clock,
    )


def make_config(query_id=None) -> AppConfig:
    return AppConfig(
        auth=AuthConfig(auth_token="cfg_token", ct0="cfg_ct0"),
        query_id=query_id,
    )


class TestSeedFromConfig:
    @pytest.mark.asyncio
    async def test_empty_store_takes_config(self, store, tmp_path, clock):
        async with make_engine(store, tmp_path, clock) as engine:
            await engine.seed_from_config(make_config("configuredQID"))

            assert await engine.auth.has_valid_session()
            assert await engine.resolver.resolve("Bookmarks") == "configuredQID"

        headers = await store.get_one(AUTH_HEADERS_KEY)
        assert headers["x-csrf-token"] == "cfg_ct0"

    @pytest.mark.asyncio
    async def test_healed_query_id_is_kept(self, authed_store, tmp_path, clock):
        await authed_store.set({"query_id": "healedQID"})

        async with make_engine(authed_store, tmp_path, clock) as engine:
            await engine.seed_from_config(make_config("oldConfiguredQID"))
            assert await engine.resolver.resolve("Bookmarks") == "healedQID"

        assert await authed_store.get_one("query_id") == "healedQID"

    @pytest.mark.asyncio
    async def test_captured_session_is_kept(self, authed_store, tmp_path, clock):
        async with make_engine(authed_store, tmp_path, clock) as engine:
            await engine.seed_from_config(make_config())

        headers = await authed_store.get_one(AUTH_HEADERS_KEY)
        assert headers["authorization"] == "Bearer test-bearer"
        assert headers["x-csrf-token"] == "test_ct0"


class TestReset:
    @pytest.mark.asyncio
    async def test_buffered_catalog_writes_survive_reset(self, store, tmp_path, clock):
        async with make_engine(store, tmp_path, clock) as engine:
            await engine.catalog.record(OBSERVED_URL)
            assert await store.get_one(GRAPHQL_CATALOG_KEY) is None

            await engine.reset()

            assert await store.get_one(GRAPHQL_CATALOG_KEY) is not None
            assert await EndpointCatalog(store).find_query_id("Bookmarks") == "abcdefghijk"

    @pytest.mark.asyncio
    async def test_reset_message_flushes_catalog(self, store, tmp_path, clock):
        async with make_engine(store, tmp_path, clock) as engine:
            await engine.catalog.record(OBSERVED_URL)
            response = await MessageRouter(engine).handle({"type": "RESET_SW_STATE"})

            assert response == {"data": {"ok": True}}
            assert await store.get_one(GRAPHQL_CATALOG_KEY) is not None
