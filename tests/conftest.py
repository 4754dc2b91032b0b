"""Shared test fixtures."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from twitter_bookmark_sync.models import Bookmark, MediaItem, User
from twitter_bookmark_sync.store import AUTH_HEADERS_KEY, AUTH_TIME_KEY, MemoryStore

FIXTURES_DIR = Path(__file__).parent / "fixtures"

SESSION_HEADERS = {
    "authorization": "Bearer test-bearer",
    "cookie": "auth_token=test_token; ct0=test_ct0",
    "x-csrf-token": "test_ct0",
}


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDiscovery:
    """Discovery strategy with canned results that records every lookup."""

    def __init__(self, found: dict[str, str] | None = None):
        self.found = dict(found or {})
        self.calls: list[str] = []

    async def discover(self, operation: str) -> str | None:
        self.calls.append(operation)
        return self.found.get(operation)

    async def discover_many(self, operations) -> dict[str, str]:
        operations = list(operations)
        self.calls.extend(operations)
        return {op: self.found[op] for op in operations if op in self.found}


def make_bookmark(tweet_id: str, sort_index: str | None = None) -> Bookmark:
    return Bookmark(
        tweet_id=tweet_id,
        author=User(id="1", username="someone", display_name="Someone"),
        text=f"tweet {tweet_id}",
        created_at=datetime(2025, 2, 10, tzinfo=timezone.utc),
        tweet_url=f"https://x.com/someone/status/{tweet_id}",
        sort_index=sort_index or tweet_id,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def authed_store(clock) -> MemoryStore:
    """A store holding a captured session and a Bookmarks query ID."""
    return MemoryStore(
        {
            AUTH_HEADERS_KEY: dict(SESSION_HEADERS),
            AUTH_TIME_KEY: clock(),
            "query_id": "bookmarksQID",
        }
    )


@pytest.fixture
def bookmarks_response() -> dict:
    """Load the sample GraphQL bookmarks response."""
    with open(FIXTURES_DIR / "bookmarks_response.json") as f:
        return json.load(f)


@pytest.fixture
def tweet_detail_response() -> dict:
    with open(FIXTURES_DIR / "tweet_detail_response.json") as f:
        return json.load(f)


@pytest.fixture
def empty_response() -> dict:
    return {
        "data": {
            "bookmark_timeline_v2": {
                "timeline": {
                    "instructions": [
                        {"type": "TimelineAddEntries", "entries": []}
                    ]
                }
            }
        }
    }


@pytest.fixture
def raw_entries(bookmarks_response) -> list[dict]:
    """Extract raw tweet entries from the fixture (excluding cursors)."""
    entries = []
    for instruction in (
        bookmarks_response["data"]["bookmark_timeline_v2"]["timeline"][
            "instructions"
        ]
    ):
        if instruction.get("type") == "TimelineAddEntries":
            for entry in instruction["entries"]:
                if entry["entryId"].startswith("tweet-"):
                    entries.append(entry)
    return entries


@pytest.fixture
def sample_bookmarks() -> list[Bookmark]:
    """A list of sample Bookmark objects for testing."""
    return [
        Bookmark(
            tweet_id="1234567890",
            author=User(id="111", username="testuser", display_name="Test User"),
            text="This is a test tweet with a link https://example.com/article",
            created_at=datetime(2025, 2, 10, 18, 30, 0, tzinfo=timezone.utc),
            tweet_url="https://x.com/testuser/status/1234567890",
            sort_index="1889000000000000003",
            urls=["https://example.com/article"],
        ),
        Bookmark(
            tweet_id="9876543210",
            author=User(
                id="222", username="photouser", display_name="Photo User"
            ),
            text="Check out this image",
            created_at=datetime(2025, 2, 9, 12, 0, 0, tzinfo=timezone.utc),
            tweet_url="https://x.com/photouser/status/9876543210",
            sort_index="1889000000000000002",
            media=[
                MediaItem(
                    type="photo",
                    url="https://pbs.twimg.com/media/test123.jpg",
                    expanded_url="https://x.com/photouser/status/9876543210/photo/1",
                )
            ],
        ),
        Bookmark(
            tweet_id="5555555555",
            author=User(
                id="333", username="quoter", display_name="The Quoter"
            ),
            text="Great take on this topic",
            created_at=datetime(2025, 2, 8, 9, 0, 0, tzinfo=timezone.utc),
            tweet_url="https://x.com/quoter/status/5555555555",
            sort_index="1889000000000000001",
            is_quote=True,
            quoted_tweet_url="https://x.com/originalauthor/status/4444444444",
        ),
    ]
