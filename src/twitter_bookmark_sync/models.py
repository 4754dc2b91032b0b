"""Data models shared across the sync engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass
class User:
    id: str
    username: str  # screen_name (handle without @)
    display_name: str  # display name


@dataclass
class MediaItem:
    type: str  # "photo", "video", "animated_gif"
    url: str  # direct media URL
    expanded_url: str  # t.co expanded URL


@dataclass
class Bookmark:
    tweet_id: str
    author: User
    text: str  # full_text with t.co URLs replaced by expanded versions
    created_at: datetime
    tweet_url: str  # https://x.com/{username}/status/{tweet_id}
    sort_index: str = ""  # opaque, compared lexicographically (newest first)
    urls: list[str] = field(default_factory=list)
    media: list[MediaItem] = field(default_factory=list)
    is_reply: bool = False
    reply_to_user: str | None = None
    is_quote: bool = False
    quoted_tweet_url: str | None = None
    lang: str = "en"


@dataclass
class BookmarkPage:
    """A decoded page of the bookmark timeline."""

    bookmarks: list[Bookmark] = field(default_factory=list)
    cursor: str | None = None
    stop_on_empty_response: bool = True

    @property
    def exhausted(self) -> bool:
        return self.stop_on_empty_response and not self.bookmarks


@dataclass
class TweetDetail:
    tweet_id: str
    focal: Bookmark | None
    thread: list[Bookmark] = field(default_factory=list)
    raw: dict = field(default_factory=dict)


@dataclass
class MutationResponse:
    ok: bool
    errors: list[dict] = field(default_factory=list)
    raw: dict | None = None


@dataclass
class SessionCredentials:
    headers: dict[str, str]
    captured_at: float


@dataclass
class ResolvedEndpoint:
    operation_name: str
    query_id: str
    resolved_at: float


@dataclass
class CatalogEntry:
    key: str  # "{operation}:{query_id}"
    operation: str
    query_id: str
    path: str
    first_seen: float
    last_seen: float
    seen_count: int = 0
    methods: list[str] = field(default_factory=list)
    sample_url: str = ""
    sample_variables: str | None = None
    sample_features: str | None = None
    sample_field_toggles: str | None = None


class EventType(str, Enum):
    CREATE = "CreateBookmark"
    DELETE = "DeleteBookmark"


@dataclass
class MutationEvent:
    id: str
    type: EventType
    tweet_id: str
    at: float
    source: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "tweet_id": self.tweet_id,
            "at": self.at,
            "source": self.source,
        }


@dataclass
class BookmarkEventPlan:
    ids_to_delete: list[str] = field(default_factory=list)
    needs_page_fetch: bool = False
    ack_ids: list[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    new_bookmarks: list[Bookmark] = field(default_factory=list)
    stale_ids: list[str] = field(default_factory=list)
    pages_requested: int = 0


@dataclass
class AuthStatus:
    has_user: bool
    has_auth: bool
    has_query_id: bool
    user_id: str | None = None
