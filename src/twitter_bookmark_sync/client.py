"""Twitter GraphQL API client with auth and query-id self-healing.

Authentication reuses headers captured from the web client (bearer token,
csrf token, session cookie). The bearer token is a static, public token
embedded in Twitter's web client JS; all web clients share the same one.

Every call runs a small state machine with a RetryBudget of one auth retry
and one endpoint retry:

    401/403                      -> clear credentials, silent reauth, retry
    GRAPHQL_VALIDATION_FAILED    -> force query-id rediscovery, retry
    other non-2xx                -> ApiError

Override with environment variables if needed:
    TWITTER_BEARER_TOKEN
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field, replace

import httpx

from .auth import AuthSessionManager
from .errors import (
    ApiError,
    AuthExpiredError,
    MissingTweetIdError,
    NetworkError,
    NoAuthError,
    NoQueryIdError,
    RateLimitedError,
    ResponseDecodeError,
)
from .fetch_queue import FetchQueue
from .models import BookmarkPage, MutationResponse, TweetDetail
from .parser import (
    is_query_id_stale,
    parse_bookmark_page,
    parse_mutation_response,
    parse_tweet_detail,
)
from .resolver import EndpointResolver
from .store import FEATURES_KEY, MemoryStore

logger = logging.getLogger(__name__)

GRAPHQL_BASE_URL = "https://x.com/i/api/graphql"

# Static bearer token used by Twitter's web client (public, not a user secret)
BEARER_TOKEN = os.environ.get(
    "TWITTER_BEARER_TOKEN",
    "AAAAAAAAAAAAAAAAAAAAANRILgAAAAAAnNwIzUejRCOuH5E6I8xnZz4puTs"
    "%3D1Zv7ttfk8LF81IUq16cHjhLTvJu4FA33AGWWjCpTnA",
)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

DEFAULT_PAGE_SIZE = 100
ERROR_BODY_LIMIT = 200

# Sent when no feature set has been captured from the web client yet.
# Reference: https://github.com/mikf/gallery-dl/blob/master/gallery_dl/extractor/twitter.py
DEFAULT_FEATURES = {
    "graphql_timeline_v2_bookmark_timeline": True,
    "rweb_tipjar_consumption_enabled": True,
    "responsive_web_graphql_exclude_directive_enabled": True,
    "verified_phone_label_enabled": False,
    "creator_subscriptions_tweet_preview_api_enabled": True,
    "responsive_web_graphql_timeline_navigation_enabled": True,
    "responsive_web_graphql_skip_user_profile_image_extensions_enabled": False,
    "communities_web_enable_tweet_community_results_fetch": True,
    "c9s_tweet_anatomy_moderator_badge_enabled": True,
    "articles_preview_enabled": True,
    "responsive_web_edit_tweet_api_enabled": True,
    "tweetypie_unmention_optimization_enabled": True,
    "responsive_web_uc_gql_enabled": True,
    "vibe_api_enabled": True,
    "responsive_web_text_conversations_enabled": False,
    "freedom_of_speech_not_reach_fetch_enabled": True,
    "standardized_nudges_misinfo": True,
    "tweet_with_visibility_results_prefer_gql_limited_actions_policy_enabled": True,
    "longform_notetweets_consumption_enabled": True,
    "responsive_web_twitter_article_tweet_consumption_enabled": True,
    "tweet_awards_web_tipping_enabled": False,
    "rweb_video_timestamps_enabled": True,
    "longform_notetweets_rich_text_read_enabled": True,
    "longform_notetweets_inline_media_enabled": True,
    "responsive_web_enhance_cards_enabled": False,
}

# TweetDetail rejects requests missing these
DETAIL_FEATURE_OVERRIDES = {
    "graphql_is_translatable_rweb_tweet_is_translatable_enabled": True,
    "view_counts_everywhere_api_enabled": True,
    "rweb_video_screen_enabled": False,
    "profile_label_improvements_pcf_label_in_post_enabled": True,
    "responsive_web_profile_redirect_enabled": False,
    "premium_content_api_read_enabled": False,
    "responsive_web_grok_analyze_button_fetch_trends_enabled": False,
    "responsive_web_grok_analyze_post_followups_enabled": True,
    "responsive_web_jetfuel_frame": True,
    "responsive_web_grok_share_attachment_enabled": True,
    "responsive_web_grok_annotations_enabled": True,
    "responsive_web_grok_show_grok_translated_post": False,
    "responsive_web_grok_analysis_button_from_backend": True,
    "post_ctas_fetch_enabled": True,
    "responsive_web_grok_image_annotation_enabled": True,
    "responsive_web_grok_imagine_annotation_enabled": True,
    "responsive_web_grok_community_note_auto_translation_is_enabled": False,
}

DETAIL_FIELD_TOGGLES = {
    "withArticleRichContentState": True,
    "withArticlePlainText": False,
    "withGrokAnalyze": False,
    "withDisallowedReplyControls": False,
}


def new_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": USER_AGENT}, timeout=30.0, follow_redirects=True
    )


@dataclass(frozen=True)
class RetryBudget:
    """Automatic retries left for one logical call."""

    auth: int = 1
    endpoint: int = 1

    def spend_auth(self) -> "RetryBudget":
        return replace(self, auth=self.auth - 1)

    def spend_endpoint(self) -> "RetryBudget":
        return replace(self, endpoint=self.endpoint - 1)


@dataclass
class GraphQLRequest:
    operation: str
    variables: dict = field(default_factory=dict)
    method: str = "GET"
    features: dict | str | None = None
    field_toggles: dict | None = None
    allow_empty_body: bool = False


def parse_feature_set(raw: object) -> dict:
    """Captured features arrive as a JSON string; tolerate anything else."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if isinstance(parsed, dict):
            return parsed
    return {}


class TwitterClient:
    """Client for Twitter's internal GraphQL API using captured web auth."""

    def __init__(
        self,
        auth: AuthSessionManager,
        resolver: EndpointResolver,
        store: MemoryStore,
        http: httpx.AsyncClient | None = None,
        base_url: str = GRAPHQL_BASE_URL,
        capture_raw: bool = False,
    ):
        self._auth = auth
        self._resolver = resolver
        self._store = store
        self._owns_http = http is None
        self._http = http or new_http_client()
        self._base_url = base_url.rstrip("/")
        self._capture_raw = capture_raw
        self.raw_responses: list[dict] = []

    async def call(
        self, request: GraphQLRequest, queue: FetchQueue | None = None
    ) -> dict | None:
        """Execute one logical GraphQL call.

        Bulk callers pass a FetchQueue so the HTTP request is paced with
        every other queued call; user-triggered calls run directly.
        """
        budget = RetryBudget()
        while True:
            if not await self._auth.has_valid_session():
                raise NoAuthError()

            query_id = await self._resolver.resolve(request.operation)
            if not query_id:
                raise NoQueryIdError(request.operation)

            headers = await self._auth.build_headers()
            if queue is not None:
                response = await queue.enqueue(
                    lambda: self._send(request, query_id, headers)
                )
            else:
                response = await self._send(request, query_id, headers)

            if response.status_code in (401, 403):
                if budget.auth > 0:
                    budget = budget.spend_auth()
                    logger.info(
                        "%s returned %d, clearing credentials",
                        request.operation,
                        response.status_code,
                    )
                    await self._auth.clear_credentials()
                    if await self._auth.silent_reauth():
                        continue
                raise AuthExpiredError(
                    "Authentication failed. The captured session has expired."
                )

            if response.status_code == 429:
                raise self._rate_limited(response)

            if not response.is_success:
                raise ApiError(response.status_code, response.text[:ERROR_BODY_LIMIT])

            payload = self._decode(response, request)

            if is_query_id_stale(payload):
                if budget.endpoint > 0:
                    budget = budget.spend_endpoint()
                    logger.warning(
                        "Query ID for %s failed validation, rediscovering",
                        request.operation,
                    )
                    if await self._resolver.force_rediscover(request.operation):
                        continue
                self._resolver.invalidate(request.operation)

            return payload

    async def _send(
        self, request: GraphQLRequest, query_id: str, headers: dict[str, str]
    ) -> httpx.Response:
        url = f"{self._base_url}/{query_id}/{request.operation}"
        features = request.features
        if isinstance(features, dict):
            features = json.dumps(features)

        try:
            if request.method == "GET":
                params = {"variables": json.dumps(request.variables)}
                if features:
                    params["features"] = features
                if request.field_toggles:
                    params["fieldToggles"] = json.dumps(request.field_toggles)
                logger.debug("GET %s", request.operation)
                return await self._http.get(url, params=params, headers=headers)

            body: dict = {"variables": request.variables, "queryId": query_id}
            if features:
                body["features"] = parse_feature_set(features)
            logger.debug("POST %s", request.operation)
            return await self._http.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"{request.operation} request failed: {e}") from e

    @staticmethod
    def _rate_limited(response: httpx.Response) -> RateLimitedError:
        retry_after = None
        reset_time = response.headers.get("x-rate-limit-reset")
        if reset_time and reset_time.isdigit():
            retry_after = max(int(reset_time) - int(time.time()), 0)
        wait_msg = f" Retry in {retry_after}s." if retry_after else ""
        return RateLimitedError(
            f"Rate limited by Twitter.{wait_msg}", retry_after=retry_after
        )

    @staticmethod
    def _decode(response: httpx.Response, request: GraphQLRequest) -> dict | None:
        if not response.content and request.allow_empty_body:
            return None
        try:
            payload = response.json()
        except ValueError as e:
            if request.allow_empty_body:
                return None
            raise ResponseDecodeError(
                f"{request.operation} returned a non-JSON body"
            ) from e
        if not isinstance(payload, dict):
            raise ResponseDecodeError(f"{request.operation} returned {type(payload).__name__}")
        return payload

    async def _captured_features(self) -> dict:
        return parse_feature_set(await self._store.get_one(FEATURES_KEY))

    # ── Operations ──

    async def fetch_bookmarks_page(
        self,
        cursor: str | None = None,
        count: int = DEFAULT_PAGE_SIZE,
        queue: FetchQueue | None = None,
    ) -> BookmarkPage:
        """Fetch and decode a single page of bookmarks."""
        variables: dict = {
            "count": count if count > 0 else DEFAULT_PAGE_SIZE,
            "includePromotedContent": True,
        }
        if cursor:
            variables["cursor"] = cursor

        captured = await self._store.get_one(FEATURES_KEY)
        features = captured if isinstance(captured, str) and captured else DEFAULT_FEATURES

        payload = await self.call(
            GraphQLRequest("Bookmarks", variables=variables, features=features),
            queue=queue,
        )
        if self._capture_raw and payload is not None:
            self.raw_responses.append(payload)
        return parse_bookmark_page(payload)

    async def fetch_tweet_detail(
        self, tweet_id: str, queue: FetchQueue | None = None
    ) -> TweetDetail:
        if not tweet_id:
            raise MissingTweetIdError()
        features = {
            **DEFAULT_FEATURES,
            **await self._captured_features(),
            **DETAIL_FEATURE_OVERRIDES,
        }
        variables = {
            "focalTweetId": tweet_id,
            "referrer": "bookmarks",
            "with_rux_injections": False,
            "rankingMode": "Relevance",
            "includePromotedContent": True,
            "withCommunity": True,
            "withQuickPromoteEligibilityTweetFields": True,
            "withBirdwatchNotes": True,
            "withVoice": True,
        }
        payload = await self.call(
            GraphQLRequest(
                "TweetDetail",
                variables=variables,
                features=features,
                field_toggles=DETAIL_FIELD_TOGGLES,
            ),
            queue=queue,
        )
        return parse_tweet_detail(payload, tweet_id)

    async def delete_bookmark(self, tweet_id: str) -> MutationResponse:
        """Remove a bookmark. User-triggered, so never queued."""
        if not tweet_id:
            raise MissingTweetIdError()
        payload = await self.call(
            GraphQLRequest(
                "DeleteBookmark",
                variables={"tweet_id": tweet_id},
                method="POST",
                allow_empty_body=True,
            )
        )
        return parse_mutation_response(payload)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
