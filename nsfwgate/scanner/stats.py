"""Process-wide scan counters.

One ``StatsAggregator`` lives on ``app.state.stats``. Single scans call
``record()``; a batch calls ``record_batch()`` exactly once with its totals.
All mutation and the snapshot read happen under one lock, so a snapshot never
observes a half-applied update and ``nsfw_detected <= total_scans`` holds at
every point.
"""

from __future__ import annotations

import threading

from nsfwgate.models.scan import StatsSnapshot


class StatsAggregator:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_scans = 0
        self._nsfw_detected = 0
        self._total_elapsed_ms = 0

    def record(self, elapsed_ms: int, is_positive: bool) -> None:
        with self._lock:
            self._total_scans += 1
            self._total_elapsed_ms += max(0, int(elapsed_ms))
            if is_positive:
                self._nsfw_detected += 1

    def record_batch(self, count: int, total_elapsed_ms: int, positive_count: int = 0) -> None:
        """Fold a whole batch into the counters.

        ``positive_count`` is clamped to ``[0, count]``.
        """
        if count <= 0:
            return
        positives = min(max(0, positive_count), count)
        with self._lock:
            self._total_scans += count
            self._total_elapsed_ms += max(0, int(total_elapsed_ms))
            self._nsfw_detected += positives

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            total = self._total_scans
            positives = self._nsfw_detected
            elapsed = self._total_elapsed_ms
        return StatsSnapshot(
            total_scans=total,
            nsfw_detected=positives,
            avg_response_time_ms=elapsed / total if total else 0.0,
        )
