"""Scan orchestration: model lookup → image → inference → verdict → stats.

``ScanOrchestrator`` is the only component that touches every other part of
the pipeline. Per call:

  1. Resolve the model (``ModelNotFoundError`` before any network activity).
     ``detect()`` additionally requires a detection-capable model.
  2. Acquire image bytes through ``ImageAcquirer``.
  3. Preprocess in a worker thread (Pillow decode + tensor build).
  4. Call the engine, optionally behind an ``asyncio.Semaphore`` gate.
  5. Postprocess with the configured NSFW threshold.
  6. Record stats once the result is complete.

Every call runs against a ``Deadline`` of ``scan_timeout_s``. A single scan
that runs out of time raises ``ScanTimeoutError`` and records nothing. A batch
checks the deadline between items and returns what it has so far.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import AsyncIterator, Optional, Sequence

from nsfwgate.constants import DEFAULT_SCAN_TIMEOUT_S, MAX_BATCH_ITEMS, MIN_BATCH_ITEMS
from nsfwgate.errors import (
    InferenceFailedError,
    InvalidRequestError,
    ScanError,
    UnsupportedOperationError,
)
from nsfwgate.inference.engine import InferenceEngine
from nsfwgate.inference.processing import PreparedImage
from nsfwgate.models.scan import (
    BatchItem,
    BatchItemResult,
    InferenceOutput,
    ScanRequest,
    ScanResult,
    Verdict,
)
from nsfwgate.registry import ModelDescriptor, ModelRegistry
from nsfwgate.scanner.acquisition import ImageAcquirer
from nsfwgate.scanner.stats import StatsAggregator
from nsfwgate.utils.deadline import Deadline
from nsfwgate.utils.logger import get_logger

logger = get_logger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _prepare(descriptor: ModelDescriptor, data: bytes, deadline: Deadline) -> PreparedImage:
    """Worker-thread preprocessing; skipped if the deadline passed while queued."""
    deadline.check()
    return descriptor.processing.preprocess(data, descriptor.input_size)


class ScanOrchestrator:
    """Runs scans end to end.

    Args:
        registry:              Populated model registry.
        acquirer:              Image source resolver.
        engine:                Inference engine.
        stats:                 Process-wide counters.
        nsfw_threshold:        ``is_nsfw`` cut-off, inclusive.
        inference_concurrency: Maximum simultaneous engine calls; 0 disables
                               the gate.
        scan_timeout_s:        Deadline for one scan or one whole batch.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        acquirer: ImageAcquirer,
        engine: InferenceEngine,
        stats: StatsAggregator,
        nsfw_threshold: float,
        inference_concurrency: int = 0,
        scan_timeout_s: Optional[float] = DEFAULT_SCAN_TIMEOUT_S,
    ) -> None:
        self.registry = registry
        self.acquirer = acquirer
        self.engine = engine
        self.stats = stats
        self.nsfw_threshold = nsfw_threshold
        self.scan_timeout_s = scan_timeout_s
        self._gate: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(inference_concurrency) if inference_concurrency > 0 else None
        )

    def _deadline(self) -> Deadline:
        return Deadline(self.scan_timeout_s)

    # ── Single image ─────────────────────────────────────────────────────────

    async def scan(self, request: ScanRequest) -> ScanResult:
        descriptor = self.registry.lookup(request.model)
        return await self._scan_one(descriptor, request.image_base64, request.image_url)

    async def detect(self, request: ScanRequest) -> ScanResult:
        descriptor = self.registry.lookup(request.model)
        if not descriptor.detects:
            raise UnsupportedOperationError(
                f"model '{descriptor.name}' does not support object detection"
            )
        return await self._scan_one(descriptor, request.image_base64, request.image_url)

    async def scan_bytes(self, model: str, data: bytes) -> ScanResult:
        """Scan an already-uploaded file (multipart endpoint)."""
        descriptor = self.registry.lookup(model)
        self.acquirer.check_size(data)
        deadline = self._deadline()
        start = time.perf_counter()
        verdict = await self._infer(descriptor, data, deadline)
        return self._finish(descriptor, verdict, start)

    async def _scan_one(
        self,
        descriptor: ModelDescriptor,
        image_base64: Optional[str],
        image_url: Optional[str],
    ) -> ScanResult:
        deadline = self._deadline()
        start = time.perf_counter()
        data = await self.acquirer.resolve(image_base64, image_url, deadline)
        verdict = await self._infer(descriptor, data, deadline)
        return self._finish(descriptor, verdict, start)

    def _finish(self, descriptor: ModelDescriptor, verdict: Verdict, start: float) -> ScanResult:
        elapsed = _elapsed_ms(start)
        self.stats.record(elapsed, verdict.is_nsfw)
        logger.info(
            "Scan complete",
            model=descriptor.name,
            nsfw_score=round(verdict.nsfw_score, 4),
            is_nsfw=verdict.is_nsfw,
            processing_time_ms=elapsed,
        )
        return ScanResult.from_verdict(descriptor.name, verdict, elapsed)

    # ── Batch ────────────────────────────────────────────────────────────────

    async def scan_batch(self, model: str, items: Sequence[BatchItem]) -> list[BatchItemResult]:
        """Scan up to ``MAX_BATCH_ITEMS`` images against one model.

        Failed items are logged and left out of the result. If the deadline
        passes between items the remaining ones are skipped.

        Raises:
            InvalidRequestError: Item count outside ``[1, MAX_BATCH_ITEMS]``.
            ModelNotFoundError:  Unknown model.
        """
        if not MIN_BATCH_ITEMS <= len(items) <= MAX_BATCH_ITEMS:
            raise InvalidRequestError(
                f"batch must contain between {MIN_BATCH_ITEMS} and {MAX_BATCH_ITEMS} images"
            )
        descriptor = self.registry.lookup(model)
        deadline = self._deadline()
        batch_start = time.perf_counter()

        results: list[BatchItemResult] = []
        positives = 0
        for index, item in enumerate(items):
            if deadline.expired:
                logger.warning(
                    "Batch deadline exceeded, returning partial results",
                    model=descriptor.name,
                    completed=len(results),
                    skipped=len(items) - index,
                )
                break
            item_start = time.perf_counter()
            try:
                data = await self.acquirer.resolve(item.image_base64, item.image_url, deadline)
                verdict = await self._infer(descriptor, data, deadline)
            except ScanError as exc:
                logger.warning(
                    "Batch item failed",
                    model=descriptor.name,
                    item_id=item.id,
                    code=exc.code,
                    error=exc.message,
                )
                continue
            if verdict.is_nsfw:
                positives += 1
            results.append(
                BatchItemResult(
                    id=item.id,
                    nsfw_score=verdict.nsfw_score,
                    is_nsfw=verdict.is_nsfw,
                    processing_time_ms=_elapsed_ms(item_start),
                )
            )

        total_ms = _elapsed_ms(batch_start)
        self.stats.record_batch(len(results), total_ms, positive_count=positives)
        logger.info(
            "Batch scan complete",
            model=descriptor.name,
            requested=len(items),
            succeeded=len(results),
            nsfw_detected=positives,
            processing_time_ms=total_ms,
        )
        return results

    # ── Inference ────────────────────────────────────────────────────────────

    @contextlib.asynccontextmanager
    async def _gated(self) -> AsyncIterator[None]:
        if self._gate is None:
            yield
            return
        async with self._gate:
            yield

    async def _infer(self, descriptor: ModelDescriptor, data: bytes, deadline: Deadline) -> Verdict:
        prepared = await deadline.run(
            asyncio.to_thread(_prepare, descriptor, data, deadline)
        )
        output = await deadline.run(self._call_engine(descriptor, prepared))
        try:
            return descriptor.processing.postprocess(output, self.nsfw_threshold)
        except ScanError:
            raise
        except Exception as exc:
            logger.error(
                "Model output could not be interpreted",
                model=descriptor.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InferenceFailedError(f"invalid model output: {exc}") from exc

    async def _call_engine(
        self, descriptor: ModelDescriptor, prepared: PreparedImage
    ) -> InferenceOutput:
        async with self._gated():
            try:
                return await self.engine.infer(descriptor, prepared)
            except ScanError:
                raise
            except Exception as exc:
                logger.error(
                    "Inference failed",
                    model=descriptor.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise InferenceFailedError(f"inference failed: {exc}") from exc
