"""Session-scoped timing primitives.

``Debouncer`` coalesces bursts of input into one call made after the input
settles, ``LatestRequestGate`` lets only the most recently issued request
apply its result, and ``RateLimiter`` spaces outbound calls by a fixed
interval.  All three are owned by a single checkout session; nothing here is
module-global.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class Debouncer:
    """Run a coroutine once input has been quiet for ``delay`` seconds.

    Every :meth:`schedule` call cancels the previously scheduled, not yet
    started call.  A call that has already started is left to finish; its
    result should be checked against a :class:`LatestRequestGate`.
    """

    def __init__(self, delay: float, name: str = "debouncer") -> None:
        self._delay = delay
        self._name = name
        self._task: asyncio.Task[Any] | None = None
        self._started: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task[Any]:
        """Schedule ``factory()`` to run after the debounce delay."""
        previous = self._task
        if previous is not None and not previous.done() and previous not in self._started:
            previous.cancel()
            logger.debug("debounce_coalesced", name=self._name)

        async def _run() -> Any:
            await asyncio.sleep(self._delay)
            task = asyncio.current_task()
            if task is not None:
                self._started.add(task)
            try:
                return await factory()
            except Exception:
                logger.exception("debounced_call_failed", name=self._name)
                raise
            finally:
                self._started.discard(task)

        self._task = asyncio.create_task(_run())
        return self._task

    async def flush(self) -> Any:
        """Wait for the scheduled call, if any, and return its result."""
        if self._task is None:
            return None
        try:
            return await self._task
        except asyncio.CancelledError:
            return None

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class LatestRequestGate:
    """Last-write-wins ordering for overlapping async requests.

    Issue a token before firing a request; when the response arrives, apply
    it only if :meth:`is_current` still holds for that token.
    """

    def __init__(self) -> None:
        self._issued = 0

    def issue(self) -> int:
        self._issued += 1
        return self._issued

    def is_current(self, token: int) -> bool:
        return token == self._issued

    def invalidate(self) -> None:
        """Make every outstanding token stale."""
        self._issued += 1


class RateLimiter:
    """Allow at most one call per ``interval`` seconds."""

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self._interval:
                    await self._sleep(self._interval - elapsed)
            self._last_call = self._clock()
