"""Serialized outbound request queue with human-like pacing.

Tasks run strictly one at a time in submission order. Between tasks the
queue sleeps for a randomized delay (base + jitter, occasionally an extra
"reading pause") so bulk pagination does not look like machine polling.
"""

import asyncio
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .errors import QueueAbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

FETCH_BASE_DELAY = 1.2
FETCH_JITTER = 1.3
FETCH_READ_PAUSE_CHANCE = 0.15
FETCH_READ_PAUSE_MIN = 1.0
FETCH_READ_PAUSE_JITTER = 2.0


@dataclass
class PacingConfig:
    base_delay: float = FETCH_BASE_DELAY
    jitter: float = FETCH_JITTER
    read_pause_chance: float = FETCH_READ_PAUSE_CHANCE
    read_pause_min: float = FETCH_READ_PAUSE_MIN
    read_pause_jitter: float = FETCH_READ_PAUSE_JITTER


@dataclass
class _QueueTask:
    execute: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class FetchQueue:
    def __init__(
        self,
        pacing: PacingConfig | None = None,
        rng: random.Random | None = None,
    ):
        self._pacing = pacing or PacingConfig()
        self._rng = rng or random.Random()
        self._tasks: deque[_QueueTask] = deque()
        self._draining = False
        self._aborted = False
        self._drain_task: asyncio.Task | None = None

    def human_delay(self) -> float:
        """Seconds to wait before the next task."""
        p = self._pacing
        delay = p.base_delay + self._rng.random() * p.jitter
        if self._rng.random() < p.read_pause_chance:
            delay += p.read_pause_min + self._rng.random() * p.read_pause_jitter
        return delay

    def enqueue(self, fn: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        """Schedule ``fn`` and return a future for its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        if self._aborted:
            future.set_exception(QueueAbortedError())
            return future

        self._tasks.append(_QueueTask(execute=fn, future=future))
        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        try:
            while self._tasks and not self._aborted:
                task = self._tasks.popleft()
                if task.future.done():
                    continue
                try:
                    result = await task.execute()
                except Exception as e:
                    if not task.future.done():
                        task.future.set_exception(e)
                else:
                    if not task.future.done():
                        task.future.set_result(result)

                if self._tasks and not self._aborted:
                    delay = self.human_delay()
                    logger.debug("Pausing %.2fs before next request", delay)
                    await asyncio.sleep(delay)
        finally:
            self._draining = False

    def abort(self) -> None:
        """Fail every queued task and refuse new ones.

        A task that is already executing finishes; callers check
        ``is_aborted`` to discard its result.
        """
        self._aborted = True
        dropped = 0
        while self._tasks:
            task = self._tasks.popleft()
            if not task.future.done():
                task.future.set_exception(QueueAbortedError())
                dropped += 1
        if dropped:
            logger.info("Fetch queue aborted; cancelled %d pending task(s)", dropped)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def is_aborted(self) -> bool:
        return self._aborted
