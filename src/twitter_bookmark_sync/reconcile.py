"""Merge the remote bookmark timeline into a local id set.

The timeline is ordered newest first. An incremental walk stops at the first
page with nothing new. A full walk visits every page so it can report local
ids that no longer exist remotely.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable

from .models import Bookmark, BookmarkPage, ReconcileResult

logger = logging.getLogger(__name__)

FetchPage = Callable[[str | None], Awaitable[BookmarkPage]]
OnPage = Callable[[list[Bookmark]], Awaitable[None] | None]


async def reconcile(
    local_ids: Iterable[str],
    fetch_page: FetchPage,
    full_reconcile: bool = False,
    on_page: OnPage | None = None,
) -> ReconcileResult:
    """Walk remote pages and collect bookmarks missing locally.

    ``on_page`` receives each page's new bookmarks as soon as they arrive,
    so callers can persist progress before the walk finishes.
    """
    local_ids = set(local_ids)
    seen = set(local_ids)
    seen_cursors: set[str] = set()
    remote_ids: set[str] = set()
    all_new: list[Bookmark] = []
    cursor: str | None = None
    pages_requested = 0

    while True:
        if cursor:
            if cursor in seen_cursors:
                logger.warning("Pagination cursor repeated, stopping walk")
                break
            seen_cursors.add(cursor)

        page = await fetch_page(cursor)
        pages_requested += 1

        page_new = [b for b in page.bookmarks if b.tweet_id not in seen]

        if full_reconcile:
            remote_ids.update(b.tweet_id for b in page.bookmarks)

        if not page_new and not full_reconcile:
            break
        if page.exhausted:
            break

        if page_new:
            seen.update(b.tweet_id for b in page_new)
            all_new.extend(page_new)
            if on_page is not None:
                result = on_page(page_new)
                if result is not None:
                    await result

        next_cursor = page.cursor or None
        if not next_cursor or next_cursor == cursor:
            break
        cursor = next_cursor

    if pages_requested == 1 and all_new and not cursor:
        logger.warning(
            "Sync stopped after 1 page (%d bookmarks) with no cursor in the "
            "response. The API response format may have changed.",
            len(all_new),
        )

    stale_ids: list[str] = []
    if full_reconcile:
        stale_ids = sorted(local_ids - remote_ids)

    return ReconcileResult(
        new_bookmarks=all_new, stale_ids=stale_ids, pages_requested=pages_requested
    )
