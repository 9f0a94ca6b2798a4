"""Backoff sleeps that a newer connection call can cancel."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

LOGGER = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class DelayCancelled(Exception):
    """Raised inside a pending delay that was cancelled by ``cancel_pending``."""


class CancelableDelay:
    """Tracks in-flight backoff sleeps so they can be cancelled as a group.

    The sleep function is injectable; tests pass a recorder that returns
    immediately so no real time elapses.
    """

    def __init__(self, sleep: Optional[SleepFn] = None) -> None:
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._pending: set[asyncio.Task[None]] = set()
        self._cancelled: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def __call__(self, seconds: float) -> None:
        task = asyncio.ensure_future(self._sleep(max(0.0, seconds)))
        self._pending.add(task)
        try:
            await task
        except asyncio.CancelledError:
            if task in self._cancelled:
                raise DelayCancelled(f"Backoff of {seconds:.2f}s cancelled") from None
            # The caller itself was cancelled; make sure the sleep dies with it.
            task.cancel()
            raise
        finally:
            self._pending.discard(task)
            self._cancelled.discard(task)

    def cancel_pending(self) -> int:
        """Cancel every pending sleep; returns how many were cancelled."""

        count = 0
        for task in list(self._pending):
            if not task.done():
                self._cancelled.add(task)
                task.cancel()
                count += 1
        if count:
            LOGGER.debug("Cancelled %s pending backoff delay(s)", count)
        return count
