"""Discover GraphQL query IDs by scanning the host site's JS bundles.

The web client ships its operation table in minified bundles as object
literals like ``{queryId:"pLtjrO4ubNh996M_Cubwsg",operationName:"Bookmarks",...}``.
This is the last resort of query-id resolution: it depends on the bundler's
output shape, so every step is bounded (script count, bytes per script,
request timeout) and any failure just means "not found".
"""

import logging
import re
from collections.abc import Iterable
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

HOME_URL = "https://x.com"
BUNDLE_URL_PATTERN = re.compile(
    r'src="(https://abs\.twimg\.com/responsive-web/client-web(?:-legacy)?/[^"]+\.js)"'
)
MAX_SCRIPTS = 15
MAX_SCRIPT_BYTES = 8 * 1024 * 1024
DISCOVERY_TIMEOUT = 20.0

_QUERY_ID = r"""["']([A-Za-z0-9_\-]{10,50})["']"""


class DiscoveryStrategy(Protocol):
    async def discover(self, operation: str) -> str | None: ...

    async def discover_many(self, operations: Iterable[str]) -> dict[str, str]: ...


def extract_script_urls(html: str, limit: int = MAX_SCRIPTS) -> list[str]:
    urls: list[str] = []
    for match in BUNDLE_URL_PATTERN.finditer(html):
        url = match.group(1)
        if url not in urls:
            urls.append(url)
        if len(urls) >= limit:
            break
    return urls


def extract_query_id(text: str, operation: str) -> str | None:
    """Find the query id paired with ``operation`` in one object literal.

    Both key orders are tried: ``queryId`` before ``operationName`` and
    ``operationName`` before ``queryId``/``operationId``.
    """
    op = re.escape(operation)
    forward = re.search(
        r"queryId\s*:\s*" + _QUERY_ID
        + r"""\s*,\s*operationName\s*:\s*["']""" + op + r"""["']""",
        text,
    )
    if forward:
        return forward.group(1)
    reverse = re.search(
        r"""operationName\s*:\s*["']""" + op
        + r"""["']\s*,\s*(?:queryId|operationId)\s*:\s*""" + _QUERY_ID,
        text,
    )
    return reverse.group(1) if reverse else None


class BundleDiscovery:
    def __init__(
        self,
        http: httpx.AsyncClient,
        home_url: str = HOME_URL,
        max_scripts: int = MAX_SCRIPTS,
        max_script_bytes: int = MAX_SCRIPT_BYTES,
        timeout: float = DISCOVERY_TIMEOUT,
    ):
        self._http = http
        self._home_url = home_url
        self._max_scripts = max_scripts
        self._max_script_bytes = max_script_bytes
        self._timeout = timeout

    async def discover(self, operation: str) -> str | None:
        found = await self.discover_many([operation])
        return found.get(operation)

    async def discover_many(self, operations: Iterable[str]) -> dict[str, str]:
        """Scan bundles once for every operation; stop when all are found."""
        remaining = list(dict.fromkeys(operations))
        found: dict[str, str] = {}
        if not remaining:
            return found

        script_urls = await self._script_urls()
        for url in script_urls:
            if not remaining:
                break
            text = await self._fetch_script(url)
            if not text:
                continue
            for operation in list(remaining):
                query_id = extract_query_id(text, operation)
                if query_id:
                    logger.info("Discovered query ID for %s in %s", operation, url)
                    found[operation] = query_id
                    remaining.remove(operation)

        if remaining:
            logger.warning(
                "Query ID discovery found nothing for %s in %d bundle(s)",
                ", ".join(remaining),
                len(script_urls),
            )
        return found

    async def _script_urls(self) -> list[str]:
        try:
            response = await self._http.get(self._home_url, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.warning("Could not load %s for discovery: %s", self._home_url, e)
            return []
        if not response.is_success:
            logger.warning(
                "Discovery page %s returned %d", self._home_url, response.status_code
            )
            return []
        return extract_script_urls(response.text, self._max_scripts)

    async def _fetch_script(self, url: str) -> str | None:
        try:
            async with self._http.stream("GET", url, timeout=self._timeout) as response:
                if not response.is_success:
                    logger.debug("Bundle %s returned %d", url, response.status_code)
                    return None
                chunks: list[bytes] = []
                size = 0
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    size += len(chunk)
                    if size >= self._max_script_bytes:
                        logger.debug("Bundle %s exceeds size cap, truncating", url)
                        break
        except httpx.HTTPError as e:
            logger.debug("Bundle %s failed: %s", url, e)
            return None
        return b"".join(chunks)[: self._max_script_bytes].decode("utf-8", errors="replace")
