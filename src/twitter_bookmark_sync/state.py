"""Local bookmark repository.

The sync layer only needs four operations from persistence, described by
BookmarkRepository. JsonBookmarkRepository keeps them in
.state/bookmarks.json as a JSON object:
    {
        "bookmarks": [{"tweet_id": "...", "sort_index": "...", ...}, ...],
        "last_write": "2025-01-15T14:30:00+00:00",
        "total": 142
    }
"""

import json
import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .errors import DbWriteFailure
from .models import Bookmark, MediaItem, User

logger = logging.getLogger(__name__)


class BookmarkRepository(Protocol):
    async def load_all(self) -> list[Bookmark]: ...

    async def upsert_many(self, bookmarks: list[Bookmark]) -> None: ...

    async def delete_many(self, tweet_ids: list[str]) -> None: ...

    async def clear(self) -> None: ...


def bookmark_to_dict(bookmark: Bookmark) -> dict:
    data = asdict(bookmark)
    data["created_at"] = bookmark.created_at.isoformat()
    return data


def bookmark_from_dict(data: dict) -> Bookmark:
    return Bookmark(
        tweet_id=data["tweet_id"],
        author=User(**data["author"]),
        text=data.get("text", ""),
        created_at=datetime.fromisoformat(data["created_at"]),
        tweet_url=data.get("tweet_url", ""),
        sort_index=data.get("sort_index", ""),
        urls=list(data.get("urls", [])),
        media=[MediaItem(**m) for m in data.get("media", [])],
        is_reply=data.get("is_reply", False),
        reply_to_user=data.get("reply_to_user"),
        is_quote=data.get("is_quote", False),
        quoted_tweet_url=data.get("quoted_tweet_url"),
        lang=data.get("lang", "en"),
    )


def sort_bookmarks(bookmarks: list[Bookmark]) -> list[Bookmark]:
    """Newest first by the timeline's sort index."""
    return sorted(bookmarks, key=lambda b: b.sort_index, reverse=True)


class JsonBookmarkRepository:
    def __init__(self, state_dir: Path = Path(".state")):
        self.state_dir = state_dir
        self.state_file = state_dir / "bookmarks.json"
        self._bookmarks: dict[str, Bookmark] | None = None

    def _load(self) -> dict[str, Bookmark]:
        if self._bookmarks is not None:
            return self._bookmarks

        self._bookmarks = {}
        if not self.state_file.exists():
            logger.info("No existing bookmarks found. Starting fresh.")
            return self._bookmarks

        try:
            data = json.loads(self.state_file.read_text())
        except (OSError, ValueError) as e:
            # The next full sync rebuilds the file
            logger.warning("Ignoring unreadable %s: %s", self.state_file, e)
            return self._bookmarks
        raw_bookmarks = data.get("bookmarks") if isinstance(data, dict) else None
        if not isinstance(raw_bookmarks, list):
            logger.warning("Ignoring malformed %s", self.state_file)
            return self._bookmarks

        for raw in raw_bookmarks:
            try:
                bookmark = bookmark_from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable stored bookmark: %s", e)
                continue
            self._bookmarks[bookmark.tweet_id] = bookmark
        logger.info("Loaded %d bookmarks from state", len(self._bookmarks))
        return self._bookmarks

    def _save(self) -> None:
        bookmarks = sort_bookmarks(list(self._load().values()))
        data = {
            "bookmarks": [bookmark_to_dict(b) for b in bookmarks],
            "last_write": datetime.now(timezone.utc).isoformat(),
            "total": len(bookmarks),
        }
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp_file = self.state_file.with_suffix(".json.tmp")
            tmp_file.write_text(json.dumps(data, indent=2, ensure_ascii=False))
            os.replace(tmp_file, self.state_file)
        except OSError as e:
            raise DbWriteFailure(f"Could not write {self.state_file}: {e}") from e

    async def load_all(self) -> list[Bookmark]:
        return sort_bookmarks(list(self._load().values()))

    async def upsert_many(self, bookmarks: list[Bookmark]) -> None:
        if not bookmarks:
            return
        stored = self._load()
        for b in bookmarks:
            stored[b.tweet_id] = b
        self._save()

    async def delete_many(self, tweet_ids: list[str]) -> None:
        stored = self._load()
        removed = [tid for tid in tweet_ids if stored.pop(tid, None) is not None]
        if removed:
            self._save()

    async def clear(self) -> None:
        self._bookmarks = {}
        if self.state_file.exists():
            self.state_file.unlink()

    @property
    def count(self) -> int:
        return len(self._load())
