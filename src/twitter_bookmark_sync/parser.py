"""Decode Twitter GraphQL payloads into typed results.

Each endpoint gets its own decoder: bookmark timeline pages, tweet detail
conversations and bookmark mutations. A payload without the expected
top-level structure raises ResponseDecodeError; individual malformed
entries inside a well-formed payload are skipped with a warning.

Tweet data nests deeply:
    entry -> content -> itemContent -> tweet_results -> result

Each result may be wrapped in a TweetWithVisibilityResults container.
"""

import logging
from datetime import datetime

from .errors import ResponseDecodeError
from .models import Bookmark, BookmarkPage, MediaItem, MutationResponse, TweetDetail, User

logger = logging.getLogger(__name__)

# Twitter's date format: "Thu May 14 18:01:35 +0000 2020"
TWITTER_DATE_FORMAT = "%a %b %d %H:%M:%S %z %Y"

QUERY_ID_STALE_CODE = "GRAPHQL_VALIDATION_FAILED"

# core.<key>.result, in order of likelihood
_USER_RESULT_KEYS = ("user_results", "user_result")


def is_query_id_stale(payload: object) -> bool:
    """True when the payload reports the query id failed validation."""
    if not isinstance(payload, dict):
        return False
    errors = payload.get("errors")
    if not isinstance(errors, list):
        return False
    return any(
        isinstance(e, dict)
        and isinstance(e.get("extensions"), dict)
        and e["extensions"].get("code") == QUERY_ID_STALE_CODE
        for e in errors
    )


def _embedded_error_summary(payload: dict) -> str:
    errors = payload.get("errors") or []
    messages = [str(e.get("message", "")) for e in errors if isinstance(e, dict)]
    return "; ".join(m for m in messages if m)[:200]


def _timeline_instructions(payload: object, *path: str) -> tuple[dict, list]:
    if not isinstance(payload, dict):
        raise ResponseDecodeError("Response is not a JSON object")
    node: object = payload.get("data")
    for key in path:
        if not isinstance(node, dict):
            node = None
            break
        node = node.get(key)
    instructions = node.get("instructions") if isinstance(node, dict) else None
    if not isinstance(instructions, list):
        detail = _embedded_error_summary(payload)
        raise ResponseDecodeError(
            f"Missing data.{'.'.join(path)}.instructions"
            + (f" (errors: {detail})" if detail else "")
        )
    return node, instructions


def _as_dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _instruction_entries(instruction: dict) -> list[dict]:
    """Entries of a TimelineAddEntries instruction, minus malformed ones."""
    entries = instruction.get("entries")
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ResponseDecodeError("Timeline entries is not a list")
    valid = []
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("entryId"), str):
            logger.warning("Skipping malformed timeline entry: %r", entry)
            continue
        valid.append(entry)
    return valid


def parse_bookmark_page(payload: object) -> BookmarkPage:
    """Decode one page of the Bookmarks timeline."""
    timeline, instructions = _timeline_instructions(
        payload, "bookmark_timeline_v2", "timeline"
    )

    raw_entries: list[dict] = []
    cursor: str | None = None
    stop_on_empty = bool(timeline.get("stopOnEmptyResponse", True))

    for instruction in instructions:
        if not isinstance(instruction, dict):
            continue
        kind = instruction.get("type")
        if kind == "TimelineTerminateTimeline":
            stop_on_empty = True
            continue
        if kind == "TimelineReplaceEntry":
            entry = _as_dict(instruction.get("entry"))
            if str(entry.get("entryId", "")).startswith("cursor-bottom"):
                cursor = _as_dict(entry.get("content")).get("value") or cursor
            continue
        if kind != "TimelineAddEntries":
            continue
        for entry in _instruction_entries(instruction):
            entry_id = entry["entryId"]
            if entry_id.startswith("tweet-"):
                raw_entries.append(entry)
            elif entry_id.startswith("cursor-bottom"):
                cursor = _as_dict(entry.get("content")).get("value")

    return BookmarkPage(
        bookmarks=parse_bookmarks(raw_entries),
        cursor=cursor or None,
        stop_on_empty_response=stop_on_empty,
    )


def parse_tweet_detail(payload: object, tweet_id: str) -> TweetDetail:
    """Decode a TweetDetail conversation around ``tweet_id``."""
    _, instructions = _timeline_instructions(
        payload, "threaded_conversation_with_injections_v2"
    )

    thread: list[Bookmark] = []
    for instruction in instructions:
        if not isinstance(instruction, dict) or instruction.get("type") != "TimelineAddEntries":
            continue
        for entry in _instruction_entries(instruction):
            content = _as_dict(entry.get("content"))
            sort_index = entry.get("sortIndex", "")
            item_contents = []
            if "itemContent" in content:
                item_contents.append((content["itemContent"], sort_index))
            items = content.get("items")
            for item in items if isinstance(items, list) else []:
                item_contents.append(
                    (_as_dict(_as_dict(item).get("item")).get("itemContent"), sort_index)
                )
            for item_content, sort_index in item_contents:
                tweet = _parse_item_content(item_content, sort_index, entry.get("entryId", "?"))
                if tweet:
                    thread.append(tweet)

    focal = next((t for t in thread if t.tweet_id == tweet_id), None)
    return TweetDetail(tweet_id=tweet_id, focal=focal, thread=thread, raw=payload)


def parse_mutation_response(payload: object) -> MutationResponse:
    """Decode a CreateBookmark/DeleteBookmark response."""
    if payload is None:
        return MutationResponse(ok=True)
    if not isinstance(payload, dict):
        raise ResponseDecodeError("Mutation response is not a JSON object")
    errors = [e for e in payload.get("errors") or [] if isinstance(e, dict)]
    data = payload.get("data")
    ok = not errors and (data is None or isinstance(data, dict))
    return MutationResponse(ok=ok, errors=errors, raw=payload)


def parse_bookmarks(raw_entries: list[dict]) -> list[Bookmark]:
    """Parse a list of raw GraphQL entry dicts into Bookmark objects."""
    bookmarks = []
    for entry in raw_entries:
        bookmark = _parse_item_content(
            _as_dict(entry.get("content")).get("itemContent"),
            entry.get("sortIndex", ""),
            entry.get("entryId", "?"),
        )
        if bookmark:
            bookmarks.append(bookmark)
    return bookmarks


def _parse_item_content(item_content: dict, sort_index: str, entry_id: str) -> Bookmark | None:
    try:
        return _parse_tweet_result(
            item_content.get("tweet_results", {}).get("result", {}), str(sort_index)
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning("Skipping malformed entry %s: %s", entry_id, e)
        return None


def _user_from(node: dict) -> User | None:
    """Build a User from a result node, with or without the legacy wrapper."""
    legacy = node.get("legacy") or {}
    source = legacy if legacy.get("screen_name") else node
    if not source.get("screen_name"):
        return None
    return User(
        id=node.get("rest_id", ""),
        username=source["screen_name"],
        display_name=source.get("name", "Unknown"),
    )


def _extract_user(tweet_result: dict, tweet_id: str = "") -> User:
    """Extract the author, trying every known key path.

    The user object has moved between schema versions; fall back to a
    recursive search as a last resort.
    """
    core = tweet_result.get("core", {})
    for key in _USER_RESULT_KEYS:
        result = core.get(key, {}).get("result", {})
        user = _user_from(result) if result else None
        if user:
            logger.debug("tweet %s: resolved author via core.%s", tweet_id, key)
            return user

    found = _deep_find_user(core)
    if found:
        logger.debug("tweet %s: resolved author via deep search", tweet_id)
        return User(
            id=found.get("rest_id", ""),
            username=found["screen_name"],
            display_name=found.get("name", "Unknown"),
        )

    logger.warning(
        "tweet %s: could not resolve username, core keys: %s",
        tweet_id,
        list(core.keys()),
    )
    return User(id="", username="unknown", display_name="Unknown")


def _deep_find_user(obj: object, max_depth: int = 6) -> dict | None:
    """Return the first nested dict holding both 'screen_name' and 'name'."""
    if max_depth <= 0:
        return None
    if isinstance(obj, dict):
        if "screen_name" in obj and "name" in obj:
            return obj
        children = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        found = _deep_find_user(child, max_depth - 1)
        if found:
            return found
    return None


def _parse_tweet_result(tweet_result: dict, sort_index: str = "") -> Bookmark | None:
    if not tweet_result:
        return None

    if tweet_result.get("__typename") == "TweetWithVisibilityResults":
        tweet_result = tweet_result.get("tweet", {})

    if not tweet_result or tweet_result.get("__typename") == "TweetTombstone":
        return None

    tweet_id = tweet_result.get("rest_id", "")
    if not tweet_id:
        return None
    legacy = tweet_result.get("legacy", {})
    author = _extract_user(tweet_result, tweet_id)

    entities = legacy.get("entities", {})
    text = _expand_urls_in_text(legacy.get("full_text", ""), entities.get("urls", []))
    # t.co media links trail the text
    for media_entity in entities.get("media", []):
        if media_entity.get("url"):
            text = text.replace(media_entity["url"], "").strip()

    created_at = datetime.strptime(legacy.get("created_at", ""), TWITTER_DATE_FORMAT)

    media_entities = (
        legacy.get("extended_entities", {}).get("media", [])
        or entities.get("media", [])
    )

    quoted_tweet_url = None
    if legacy.get("is_quote_status"):
        quoted = tweet_result.get("quoted_status_result", {}).get("result", {})
        quoted_id = quoted.get("rest_id")
        quoted_user = _extract_user(quoted, f"quoted-{quoted_id}")
        if quoted_id and quoted_user.username != "unknown":
            quoted_tweet_url = f"https://x.com/{quoted_user.username}/status/{quoted_id}"

    return Bookmark(
        tweet_id=tweet_id,
        author=author,
        text=text,
        created_at=created_at,
        tweet_url=f"https://x.com/{author.username}/status/{tweet_id}",
        sort_index=sort_index or tweet_id,
        urls=[u["expanded_url"] for u in entities.get("urls", []) if "expanded_url" in u],
        media=[
            MediaItem(
                type=m.get("type", "photo"),
                url=m.get("media_url_https", ""),
                expanded_url=m.get("expanded_url", ""),
            )
            for m in media_entities
        ],
        is_reply=bool(legacy.get("in_reply_to_screen_name")),
        reply_to_user=legacy.get("in_reply_to_screen_name"),
        is_quote=legacy.get("is_quote_status", False),
        quoted_tweet_url=quoted_tweet_url,
        lang=legacy.get("lang", "en"),
    )


def _expand_urls_in_text(text: str, url_entities: list[dict]) -> str:
    """Replace t.co shortened URLs in text with their expanded versions."""
    for entity in sorted(
        url_entities, key=lambda u: u.get("indices", [0])[0], reverse=True
    ):
        short_url = entity.get("url", "")
        if short_url:
            text = text.replace(short_url, entity.get("expanded_url", short_url))
    return text
