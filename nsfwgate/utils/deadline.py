"""Explicit per-call deadlines.

A ``Deadline`` is created once per scan call and threaded through image
acquisition and inference. Each suspension point awaits through
``Deadline.run()``, which bounds the awaitable by the time remaining and
raises ``ScanTimeoutError`` when the budget is spent. The batch loop checks
``expired`` between items so it can stop early and keep what it already has.

Task cancellation (client disconnect, shutdown) is not converted: it
propagates as ``asyncio.CancelledError``.

Work handed to ``asyncio.to_thread`` cannot be interrupted. On expiry
``run()`` stops waiting for it but the thread runs to completion; callers
that queue thread work call ``check()`` at the start of it so work that was
still queued when time ran out is skipped.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from nsfwgate.errors import ScanTimeoutError

T = TypeVar("T")


class Deadline:
    """Absolute point in monotonic time after which work must stop.

    Args:
        timeout_s: Budget in seconds, or None for no limit.
        clock:     Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        timeout_s: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at: Optional[float] = (
            None if timeout_s is None else clock() + timeout_s
        )

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        """Seconds left (never negative), or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self) -> None:
        if self.expired:
            raise ScanTimeoutError()

    def bound(self, timeout_s: float) -> float:
        """Clamp a per-operation timeout to the time remaining."""
        remaining = self.remaining()
        return timeout_s if remaining is None else min(timeout_s, remaining)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, cancelling it if the deadline passes first."""
        if self.expired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ScanTimeoutError()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remaining())
        except asyncio.TimeoutError:
            raise ScanTimeoutError() from None
