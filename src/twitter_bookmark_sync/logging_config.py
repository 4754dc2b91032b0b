"""Configure logging for the engine and CLI."""

import logging
import sys

PACKAGE_LOGGER = "twitter_bookmark_sync"


def setup_logging(debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger(PACKAGE_LOGGER)
    root.setLevel(level)
    # Repeated CLI invocations in one process must not stack handlers
    root.handlers = [handler]

    # httpx logs every request at INFO
    httpx_level = logging.DEBUG if debug else logging.WARNING
    logging.getLogger("httpx").setLevel(httpx_level)
    logging.getLogger("httpcore").setLevel(httpx_level)
