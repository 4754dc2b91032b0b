"""Session capture and silent re-authentication.

The engine never asks for credentials. Auth headers are captured from the
host site's own outbound requests, the signed-in user is derived from the
``twid`` cookie, and an expired session is re-established by loading a page
in a hidden browser tab and waiting for fresh headers to be captured.

Browser access is injected:
    CookieReader        - async callable returning the raw ``twid`` value
    BackgroundTabOpener - opens/closes a hidden tab
"""

import asyncio
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol
from urllib.parse import unquote

from .errors import NoAuthError
from .models import AuthStatus, SessionCredentials
from .store import (
    AUTH_HEADERS_KEY,
    AUTH_TIME_KEY,
    QUERY_ID_KEYS,
    USER_ID_KEY,
    MemoryStore,
)

logger = logging.getLogger(__name__)

CAPTURED_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "x-csrf-token",
        "x-client-uuid",
        "x-client-transaction-id",
        "x-twitter-active-user",
        "x-twitter-auth-type",
        "x-twitter-client-language",
    }
)
REQUIRED_HEADERS = ("authorization", "cookie", "x-csrf-token")

REAUTH_URL = "https://x.com/i/bookmarks"
REAUTH_TIMEOUT = 15.0

CookieReader = Callable[[], Awaitable[str | None]]


class BackgroundTabOpener(Protocol):
    async def open(self, url: str) -> Any: ...

    async def close(self, handle: Any) -> None: ...


def parse_twid_user_id(raw_value: str | None) -> str | None:
    """Extract the numeric user id from a ``twid`` cookie value.

    Accepts the raw value (``u%3D123``), its URL-decoded form (``u=123``)
    or a bare number.
    """
    if not isinstance(raw_value, str) or not raw_value:
        return None

    candidates = [raw_value]
    decoded = unquote(raw_value)
    if decoded and decoded != raw_value:
        candidates.append(decoded)

    for candidate in candidates:
        trimmed = candidate.strip()
        if not trimmed:
            continue
        match = re.search(r"u=(\d+)", trimmed)
        if match:
            return match.group(1)
        match = re.search(r"u%3[Dd](\d+)", trimmed)
        if match:
            return match.group(1)
        if trimmed.isdigit():
            return trimmed
    return None


def increment_transaction_id(value: str, rng: random.Random | None = None) -> str:
    """Bump one random digit of the transaction id by 1..8 (mod 10)."""
    if not value:
        return value
    rng = rng or random.Random()
    digits = [i for i, ch in enumerate(value) if "0" <= ch <= "9"]
    if not digits:
        return value
    idx = rng.choice(digits)
    bump = rng.randint(1, 8)
    new_digit = str((int(value[idx]) + bump) % 10)
    return value[:idx] + new_digit + value[idx + 1:]


def cookie_session_headers(
    auth_token: str, ct0: str, bearer_token: str, twid: str | None = None
) -> dict[str, str]:
    """Headers equivalent to a captured session, built from browser cookies.

    Used when no browser is attached and the user pasted ``auth_token`` and
    ``ct0`` from their cookie jar instead.
    """
    cookie = f"auth_token={auth_token}; ct0={ct0}"
    if twid:
        cookie += f"; twid={twid}"
    return {
        "authorization": f"Bearer {bearer_token}",
        "cookie": cookie,
        "x-csrf-token": ct0,
    }


class AuthSessionManager:
    def __init__(
        self,
        store: MemoryStore,
        cookie_reader: CookieReader | None = None,
        tab_opener: BackgroundTabOpener | None = None,
        reauth_timeout: float = REAUTH_TIMEOUT,
        reauth_url: str = REAUTH_URL,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._cookie_reader = cookie_reader
        self._tab_opener = tab_opener
        self._reauth_timeout = reauth_timeout
        self._reauth_url = reauth_url
        self._clock = clock
        self._rng = rng or random.Random()
        self._reauth_in_progress = False
        self._auth_tab: Any = None

    @property
    def reauth_in_progress(self) -> bool:
        return self._reauth_in_progress

    # ── Identity ──

    async def _read_cookie_user_id(self) -> str | None:
        if self._cookie_reader is None:
            return None
        try:
            raw = await self._cookie_reader()
        except Exception as e:
            # Cookie reads fail transiently; "unknown" is not "logged out".
            logger.debug("twid cookie read failed: %s", e)
            return None
        return parse_twid_user_id(raw or "")

    async def get_user_id(self) -> str | None:
        """Current user id from the cookie, falling back to the stored one."""
        stored = await self._store.get_one(USER_ID_KEY)
        user_id = await self._read_cookie_user_id()
        if user_id:
            if stored != user_id:
                await self._store.set({USER_ID_KEY: user_id})
            return user_id
        return stored if isinstance(stored, str) and stored else None

    async def on_cookie_changed(
        self, name: str, domain: str, removed: bool = False, cause: str = ""
    ) -> None:
        if name != "twid":
            return
        if not domain.lstrip(".").lower().endswith("x.com"):
            return
        # An overwrite fires a removal before the new value is set.
        if removed and cause == "overwrite":
            return
        await self.get_user_id()

    async def record_detected_user(self, user_id: str | None) -> None:
        """User id relayed by the content script running on the host page."""
        if user_id:
            await self._store.set({USER_ID_KEY: user_id})

    # ── Credentials ──

    async def get_credentials(self) -> SessionCredentials | None:
        stored = await self._store.get([AUTH_HEADERS_KEY, AUTH_TIME_KEY])
        headers = stored.get(AUTH_HEADERS_KEY)
        if not isinstance(headers, dict) or not headers.get("authorization"):
            return None
        return SessionCredentials(
            headers=headers, captured_at=float(stored.get(AUTH_TIME_KEY) or 0)
        )

    async def has_valid_session(self) -> bool:
        return await self.get_credentials() is not None

    async def capture_from_observed_headers(self, headers: Mapping[str, str]) -> bool:
        """Store the captured headers if the set is complete.

        Returns True when a new credential set was committed.
        """
        captured = {
            name.lower(): value
            for name, value in headers.items()
            if name.lower() in CAPTURED_HEADERS and value
        }
        if not all(captured.get(name) for name in REQUIRED_HEADERS):
            return False

        await self._store.set(
            {AUTH_HEADERS_KEY: captured, AUTH_TIME_KEY: self._clock()}
        )
        logger.debug("Captured auth headers (%d fields)", len(captured))
        return True

    async def clear_credentials(self) -> None:
        await self._store.remove([AUTH_HEADERS_KEY, AUTH_TIME_KEY])

    async def build_headers(self) -> dict[str, str]:
        credentials = await self.get_credentials()
        if credentials is None:
            raise NoAuthError()
        auth = credentials.headers

        headers = {
            "authorization": auth["authorization"],
            "x-csrf-token": auth.get("x-csrf-token", ""),
            "x-twitter-active-user": auth.get("x-twitter-active-user") or "yes",
            "x-twitter-auth-type": auth.get("x-twitter-auth-type") or "OAuth2Session",
            "x-twitter-client-language": auth.get("x-twitter-client-language") or "en",
            "content-type": "application/json",
        }
        if auth.get("cookie"):
            headers["cookie"] = auth["cookie"]
        if auth.get("x-client-uuid"):
            headers["x-client-uuid"] = auth["x-client-uuid"]
        if auth.get("x-client-transaction-id"):
            headers["x-client-transaction-id"] = increment_transaction_id(
                auth["x-client-transaction-id"], self._rng
            )
        return headers

    async def check_auth(self) -> AuthStatus:
        stored = await self._store.get(
            [AUTH_HEADERS_KEY, QUERY_ID_KEYS["Bookmarks"]]
        )
        user_id = await self.get_user_id()
        headers = stored.get(AUTH_HEADERS_KEY)
        has_auth = isinstance(headers, dict) and bool(headers.get("authorization"))
        return AuthStatus(
            has_user=bool(user_id or has_auth),
            has_auth=has_auth,
            has_query_id=bool(stored.get(QUERY_ID_KEYS["Bookmarks"])),
            user_id=user_id,
        )

    # ── Hidden tab ──

    async def start_auth_capture(self) -> Any:
        """Open a hidden tab so the host page issues authenticated requests."""
        if self._tab_opener is None:
            return None
        await self.close_auth_tab()
        self._auth_tab = await self._tab_opener.open(self._reauth_url)
        return self._auth_tab

    async def close_auth_tab(self) -> None:
        tab, self._auth_tab = self._auth_tab, None
        if tab is not None and self._tab_opener is not None:
            try:
                await self._tab_opener.close(tab)
            except Exception as e:
                logger.debug("Closing auth tab failed: %s", e)

    async def silent_reauth(self) -> bool:
        """Re-establish the session without prompting the user.

        Returns True once fresh headers are captured, False on timeout or
        when another reauth is already running.
        """
        if self._reauth_in_progress:
            return False
        if self._tab_opener is None:
            logger.info("Silent reauth unavailable: no browser tab opener configured")
            return False

        self._reauth_in_progress = True
        captured = asyncio.Event()

        def on_change(changes: dict) -> None:
            if changes.get(AUTH_HEADERS_KEY):
                captured.set()

        unsubscribe = self._store.watch(on_change)
        tab = None
        try:
            logger.info("Session expired, attempting silent reauth")
            tab = await self._tab_opener.open(self._reauth_url)
            await asyncio.wait_for(captured.wait(), timeout=self._reauth_timeout)
            logger.info("Silent reauth succeeded")
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Silent reauth timed out after %.0fs", self._reauth_timeout
            )
            return False
        except OSError as e:
            logger.warning("Could not open reauth tab: %s", e)
            return False
        finally:
            unsubscribe()
            if tab is not None:
                try:
                    await self._tab_opener.close(tab)
                except Exception as e:
                    logger.debug("Closing reauth tab failed: %s", e)
            self._reauth_in_progress = False

    def reset(self) -> None:
        self._reauth_in_progress = False
        self._auth_tab = None
