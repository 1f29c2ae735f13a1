"""Per-client sliding-window admission control with escalating blocks.

Each client (keyed by network address) keeps a deque of the monotonic
timestamps of its recently admitted requests. On every ``admit()``:

  1. A client inside a block period is denied; nothing is recorded.
  2. Timestamps older than ``window_s`` are pruned.
  3. A client already holding ``limit`` timestamps is blocked for
     ``block_s`` and denied.
  4. Otherwise ``now`` is appended and the request is admitted.

The whole sequence runs under one lock scoped to the client map, so two
concurrent requests from the same client can never both take the last slot
or lose an appended timestamp.

``reclaim()`` (driven by ``run_reclaimer()`` in the application lifespan)
drops clients that have no recent requests and are not blocked, bounding
memory held for one-shot clients.
"""

from __future__ import annotations

import asyncio
import enum
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from nsfwgate.constants import (
    DEFAULT_RATE_LIMIT_BLOCK_S,
    DEFAULT_RATE_LIMIT_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_S,
    RATE_LIMIT_RECLAIM_INTERVAL_S,
)
from nsfwgate.utils.logger import get_logger

logger = get_logger(__name__)


class Admission(str, enum.Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"


@dataclass
class ClientWindow:
    """Admission state for a single client.

    Attributes:
        timestamps:    Admitted request times, oldest first.
        blocked_until: Monotonic instant the current block ends, if any.
    """

    timestamps: deque[float] = field(default_factory=deque)
    blocked_until: Optional[float] = None

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def prune(self, cutoff: float) -> None:
        """Drop timestamps at or before *cutoff*."""
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class SlidingWindowLimiter:
    """Sliding-window rate limiter keyed by client identifier.

    Args:
        limit:    Requests admitted per window.
        window_s: Window length in seconds.
        block_s:  Block duration once the limit is hit.
        clock:    Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        limit: int = DEFAULT_RATE_LIMIT_REQUESTS,
        window_s: float = DEFAULT_RATE_LIMIT_WINDOW_S,
        block_s: float = DEFAULT_RATE_LIMIT_BLOCK_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_s <= 0 or block_s <= 0:
            raise ValueError("window_s and block_s must be positive")
        self.limit = limit
        self.window_s = window_s
        self.block_s = block_s
        self._clock = clock
        self._clients: dict[str, ClientWindow] = {}
        self._lock = threading.Lock()

    # ── Admission ─────────────────────────────────────────────────────────────

    def admit(self, client_id: str) -> Admission:
        """Decide whether a request from *client_id* may proceed."""
        with self._lock:
            now = self._clock()
            window = self._clients.get(client_id)
            if window is None:
                window = ClientWindow()
                self._clients[client_id] = window

            if window.is_blocked(now):
                return Admission.BLOCKED

            window.prune(now - self.window_s)

            if len(window.timestamps) >= self.limit:
                window.blocked_until = now + self.block_s
                logger.warning(
                    "Rate limit exceeded",
                    client_id=client_id,
                    limit=self.limit,
                    window_s=self.window_s,
                    block_duration_s=self.block_s,
                )
                return Admission.BLOCKED

            window.timestamps.append(now)
            return Admission.ALLOWED

    # ── Reclamation ───────────────────────────────────────────────────────────

    def reclaim(self) -> int:
        """Remove idle, unblocked clients. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            cutoff = now - self.window_s
            idle: list[str] = []
            for client_id, window in self._clients.items():
                window.prune(cutoff)
                if not window.timestamps and not window.is_blocked(now):
                    idle.append(client_id)
            for client_id in idle:
                del self._clients[client_id]
        if idle:
            logger.debug("Reclaimed idle rate-limit windows", count=len(idle))
        return len(idle)

    async def run_reclaimer(self, interval_s: float = RATE_LIMIT_RECLAIM_INTERVAL_S) -> None:
        """Call ``reclaim()`` every *interval_s* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval_s)
            self.reclaim()

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._clients)

    @property
    def blocked_clients(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for w in self._clients.values() if w.is_blocked(now))

    def window_for(self, client_id: str) -> Optional[ClientWindow]:
        """Return the live window for *client_id* (tests and diagnostics)."""
        with self._lock:
            return self._clients.get(client_id)
