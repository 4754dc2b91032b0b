"""Weekly housekeeping of time-bounded state."""

import logging
import time
from dataclasses import dataclass

from .catalog import GRAPHQL_ENDPOINT_RETENTION, EndpointCatalog
from .events import BOOKMARK_EVENT_RETENTION, MutationEventQueue
from .store import CLEANUP_AT_KEY, MemoryStore

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 60 * 60 * 24 * 7


@dataclass
class CleanupReport:
    ran: bool
    events_removed: int = 0
    endpoints_removed: int = 0


async def run_weekly_cleanup(
    store: MemoryStore,
    catalog: EndpointCatalog,
    events: MutationEventQueue,
    now: float | None = None,
) -> CleanupReport:
    """Prune expired events and catalog entries, at most once a week."""
    now = time.time() if now is None else now
    last_cleanup = float(await store.get_one(CLEANUP_AT_KEY) or 0)
    if now - last_cleanup < CLEANUP_INTERVAL:
        return CleanupReport(ran=False)

    await store.set({CLEANUP_AT_KEY: now})
    report = CleanupReport(
        ran=True,
        events_removed=await events.prune(now, BOOKMARK_EVENT_RETENTION),
        endpoints_removed=await catalog.prune(now, GRAPHQL_ENDPOINT_RETENTION),
    )
    logger.info(
        "Weekly cleanup removed %d event(s) and %d endpoint(s)",
        report.events_removed,
        report.endpoints_removed,
    )
    return report
