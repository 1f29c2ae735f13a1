"""Unit tests for nsfwgate/scanner/orchestrator.py — ScanOrchestrator.

Covers:
  - single scan: result shape, stats recording, unknown model before fetch
  - detect: capability check before any acquisition, detections attached
  - scan_bytes: multipart path with size ceiling
  - batch: partial failure (404 on one URL), stats aggregation, size bounds,
    deadline stop with partial results
  - inference errors and malformed model output wrapped, timeouts surfaced,
    concurrency gate honoured, queued preprocessing skipped after the deadline
"""

from __future__ import annotations

import asyncio
import base64
import dataclasses
from typing import Optional

import httpx
import pytest

from nsfwgate.errors import (
    DecodeFailedError,
    InferenceFailedError,
    InvalidRequestError,
    ModelNotFoundError,
    PayloadTooLargeError,
    ScanTimeoutError,
    UnsupportedOperationError,
)
from nsfwgate.inference.engine import StaticInferenceEngine
from nsfwgate.inference.processing import (
    PreparedImage,
    ProcessingPair,
    postprocess_classification,
    preprocess_classification,
)
from nsfwgate.models.scan import BatchItem, ClassificationOutput, ScanRequest
from nsfwgate.registry import ModelDescriptor, ModelRegistry
from nsfwgate.scanner.acquisition import ImageAcquirer
from nsfwgate.scanner.orchestrator import ScanOrchestrator, _prepare
from nsfwgate.scanner.stats import StatsAggregator
from nsfwgate.utils.deadline import Deadline

MB = 1024 * 1024


class ImageServer:
    """MockTransport handler serving a PNG everywhere except /missing*."""

    def __init__(self, png: bytes) -> None:
        self.png = png
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if request.url.path.startswith("/missing"):
            return httpx.Response(404)
        return httpx.Response(200, content=self.png, headers={"content-type": "image/png"})


class SlowEngine(StaticInferenceEngine):
    """Static engine that sleeps before answering selected calls."""

    def __init__(self, delays: dict[int, float], **kwargs) -> None:
        super().__init__(**kwargs)
        self.delays = delays
        self.attempts = 0

    async def infer(self, descriptor, image):
        self.attempts += 1
        delay = self.delays.get(self.attempts, 0.0)
        if delay:
            await asyncio.sleep(delay)
        return await super().infer(descriptor, image)


class ExplodingEngine:
    async def infer(self, descriptor, image):
        raise RuntimeError("CUDA out of memory")


class ScriptedEngine:
    """Returns the given outputs in order, one per call."""

    def __init__(self, outputs) -> None:
        self.outputs = list(outputs)

    async def infer(self, descriptor, image):
        return self.outputs.pop(0)


class TrackingEngine(StaticInferenceEngine):
    def __init__(self) -> None:
        super().__init__()
        self.active = 0
        self.max_active = 0

    async def infer(self, descriptor, image):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().infer(descriptor, image)
        finally:
            self.active -= 1


@pytest.fixture
def server(png_bytes: bytes) -> ImageServer:
    return ImageServer(png_bytes)


@pytest.fixture
def stats() -> StatsAggregator:
    return StatsAggregator()


@pytest.fixture
def build(registry: ModelRegistry, server: ImageServer, stats: StatsAggregator):
    def _build(
        engine=None,
        threshold: float = 0.7,
        concurrency: int = 0,
        timeout_s: Optional[float] = 60.0,
        max_bytes: int = 10 * MB,
    ) -> ScanOrchestrator:
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        return ScanOrchestrator(
            registry=registry,
            acquirer=ImageAcquirer(client, max_bytes=max_bytes),
            engine=engine if engine is not None else StaticInferenceEngine(),
            stats=stats,
            nsfw_threshold=threshold,
            inference_concurrency=concurrency,
            scan_timeout_s=timeout_s,
        )

    return _build


# ─── Single scan ──────────────────────────────────────────────────────────────


class TestScan:
    @pytest.mark.asyncio
    async def test_inline_scan(self, build, stats: StatsAggregator, png_base64: str) -> None:
        orchestrator = build()
        result = await orchestrator.scan(
            ScanRequest(model="nsfw_squeezenet", image_base64=png_base64)
        )
        assert result.model == "nsfw_squeezenet"
        assert result.nsfw_score == 0.3
        assert result.safe_score == 0.7
        assert result.is_nsfw is False
        assert result.confidence == 0.7
        assert result.processing_time_ms >= 0
        assert result.detections is None
        assert stats.snapshot().total_scans == 1
        assert stats.snapshot().nsfw_detected == 0

    @pytest.mark.asyncio
    async def test_url_scan(self, build, server: ImageServer) -> None:
        result = await build().scan(
            ScanRequest(model="mobilenetv2-7", image_url="http://img.test/cat.png")
        )
        assert result.model == "mobilenetv2-7"
        assert server.requests == ["http://img.test/cat.png"]

    @pytest.mark.asyncio
    async def test_positive_counted(self, build, stats: StatsAggregator, png_base64: str) -> None:
        engine = StaticInferenceEngine(safe_score=0.1, nsfw_score=0.9)
        result = await build(engine=engine).scan(
            ScanRequest(model="nsfw_squeezenet", image_base64=png_base64)
        )
        assert result.is_nsfw is True
        assert stats.snapshot().nsfw_detected == 1

    @pytest.mark.asyncio
    async def test_unknown_model_never_fetches(self, build, server: ImageServer) -> None:
        with pytest.raises(ModelNotFoundError):
            await build().scan(ScanRequest(model="resnet", image_url="http://img.test/a.png"))
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_oversized_inline_never_reaches_engine(self, build, stats: StatsAggregator) -> None:
        engine = StaticInferenceEngine()
        payload = base64.b64encode(bytes(11 * MB)).decode()
        with pytest.raises(PayloadTooLargeError):
            await build(engine=engine).scan(
                ScanRequest(model="nsfw_squeezenet", image_base64=payload)
            )
        assert engine.calls == 0
        assert stats.snapshot().total_scans == 0

    @pytest.mark.asyncio
    async def test_undecodable_image(self, build) -> None:
        payload = base64.b64encode(b"plain text, not an image").decode()
        with pytest.raises(DecodeFailedError):
            await build().scan(ScanRequest(model="nsfw_squeezenet", image_base64=payload))

    @pytest.mark.asyncio
    async def test_engine_error_wrapped(self, build, stats: StatsAggregator, png_base64: str) -> None:
        with pytest.raises(InferenceFailedError):
            await build(engine=ExplodingEngine()).scan(
                ScanRequest(model="nsfw_squeezenet", image_base64=png_base64)
            )
        assert stats.snapshot().total_scans == 0

    @pytest.mark.asyncio
    async def test_timeout_records_nothing(self, build, stats: StatsAggregator, png_base64: str) -> None:
        engine = SlowEngine({1: 1.0})
        with pytest.raises(ScanTimeoutError):
            await build(engine=engine, timeout_s=0.05).scan(
                ScanRequest(model="nsfw_squeezenet", image_base64=png_base64)
            )
        assert stats.snapshot().total_scans == 0

    @pytest.mark.asyncio
    async def test_scan_bytes(self, build, png_bytes: bytes) -> None:
        result = await build().scan_bytes("nsfw_squeezenet", png_bytes)
        assert result.model == "nsfw_squeezenet"

    @pytest.mark.asyncio
    async def test_scan_bytes_enforces_ceiling(self, build, png_bytes: bytes) -> None:
        with pytest.raises(PayloadTooLargeError):
            await build(max_bytes=16).scan_bytes("nsfw_squeezenet", png_bytes)

    @pytest.mark.asyncio
    async def test_concurrency_gate(self, build, png_base64: str) -> None:
        engine = TrackingEngine()
        orchestrator = build(engine=engine, concurrency=1)
        request = ScanRequest(model="nsfw_squeezenet", image_base64=png_base64)
        await asyncio.gather(*(orchestrator.scan(request) for _ in range(4)))
        assert engine.max_active == 1
        assert engine.calls == 4


# ─── Detect ───────────────────────────────────────────────────────────────────


class TestDetect:
    @pytest.mark.asyncio
    async def test_classification_model_rejected_before_fetch(
        self, build, server: ImageServer
    ) -> None:
        with pytest.raises(UnsupportedOperationError):
            await build().detect(
                ScanRequest(model="nsfw_squeezenet", image_url="http://img.test/a.png")
            )
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_detection_result(self, build, stats: StatsAggregator, png_base64: str) -> None:
        result = await build().detect(ScanRequest(model="NudeNet-320n", image_base64=png_base64))
        assert result.detections is not None
        assert {d.label for d in result.detections} == {"FACE_FEMALE", "ARMPITS_EXPOSED"}
        # Neither default label is an exposed class.
        assert result.nsfw_score == 0.0
        assert result.safe_score == 1.0
        assert stats.snapshot().total_scans == 1

    @pytest.mark.asyncio
    async def test_scan_with_detection_model_includes_detections(
        self, build, png_base64: str
    ) -> None:
        result = await build().scan(ScanRequest(model="NudeNet-640m", image_base64=png_base64))
        assert result.detections is not None


# ─── Batch ────────────────────────────────────────────────────────────────────


class TestBatch:
    @pytest.mark.asyncio
    async def test_failed_item_omitted(self, build, stats: StatsAggregator) -> None:
        items = [
            BatchItem(id="1", image_url="http://img.test/one.png"),
            BatchItem(id="2", image_url="http://img.test/missing.png"),
            BatchItem(id="3", image_url="http://img.test/three.png"),
        ]
        results = await build().scan_batch("nsfw_squeezenet", items)
        assert [r.id for r in results] == ["1", "3"]
        assert stats.snapshot().total_scans == 2

    @pytest.mark.asyncio
    async def test_mixed_failures(self, build, png_base64: str) -> None:
        items = [
            BatchItem(id="ok", image_base64=png_base64),
            BatchItem(id="nosrc"),
            BatchItem(id="bad", image_base64="%%%"),
        ]
        results = await build().scan_batch("nsfw_squeezenet", items)
        assert [r.id for r in results] == ["ok"]

    @pytest.mark.asyncio
    async def test_positives_aggregated_once(self, build, stats: StatsAggregator, png_base64: str) -> None:
        engine = StaticInferenceEngine(safe_score=0.2, nsfw_score=0.8)
        items = [BatchItem(id=str(i), image_base64=png_base64) for i in range(3)]
        results = await build(engine=engine).scan_batch("nsfw_squeezenet", items)
        assert all(r.is_nsfw for r in results)
        snap = stats.snapshot()
        assert snap.total_scans == 3
        assert snap.nsfw_detected == 3

    @pytest.mark.asyncio
    async def test_duplicate_ids_returned_as_given(self, build, png_base64: str) -> None:
        items = [BatchItem(id="same", image_base64=png_base64) for _ in range(2)]
        results = await build().scan_batch("nsfw_squeezenet", items)
        assert [r.id for r in results] == ["same", "same"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 11])
    async def test_item_count_bounds(self, build, png_base64: str, count: int) -> None:
        items = [BatchItem(id=str(i), image_base64=png_base64) for i in range(count)]
        with pytest.raises(InvalidRequestError):
            await build().scan_batch("nsfw_squeezenet", items)

    @pytest.mark.asyncio
    async def test_unknown_model(self, build, server: ImageServer) -> None:
        with pytest.raises(ModelNotFoundError):
            await build().scan_batch(
                "resnet", [BatchItem(id="1", image_url="http://img.test/a.png")]
            )
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_deadline_returns_partial_results(
        self, build, stats: StatsAggregator, png_base64: str
    ) -> None:
        engine = SlowEngine({2: 1.0})
        items = [BatchItem(id=str(i), image_base64=png_base64) for i in range(1, 4)]
        results = await build(engine=engine, timeout_s=0.3).scan_batch("nsfw_squeezenet", items)
        assert [r.id for r in results] == ["1"]
        # Item 3 is never attempted once the deadline has passed.
        assert engine.attempts == 2
        assert stats.snapshot().total_scans == 1

    @pytest.mark.asyncio
    async def test_malformed_engine_output_drops_item(
        self, build, stats: StatsAggregator, png_base64: str
    ) -> None:
        engine = ScriptedEngine([[], None, []])
        items = [BatchItem(id=str(i), image_base64=png_base64) for i in range(3)]
        results = await build(engine=engine).scan_batch("NudeNet-320n", items)
        assert [r.id for r in results] == ["0", "2"]
        assert stats.snapshot().total_scans == 2

    @pytest.mark.asyncio
    async def test_non_numeric_score_drops_item(self, build, png_base64: str) -> None:
        engine = ScriptedEngine(
            [
                ClassificationOutput(safe_score="high", nsfw_score="low"),  # type: ignore[arg-type]
                ClassificationOutput(safe_score=0.9, nsfw_score=0.1),
            ]
        )
        items = [BatchItem(id=str(i), image_base64=png_base64) for i in range(2)]
        results = await build(engine=engine).scan_batch("nsfw_squeezenet", items)
        assert [r.id for r in results] == ["1"]


# ─── Malformed model output ───────────────────────────────────────────────────


class TestMalformedOutput:
    @pytest.mark.asyncio
    async def test_none_output_is_inference_failed(
        self, build, stats: StatsAggregator, png_base64: str
    ) -> None:
        with pytest.raises(InferenceFailedError):
            await build(engine=ScriptedEngine([None])).detect(
                ScanRequest(model="NudeNet-320n", image_base64=png_base64)
            )
        assert stats.snapshot().total_scans == 0

    @pytest.mark.asyncio
    async def test_wrong_output_kind_is_inference_failed(self, build, png_base64: str) -> None:
        with pytest.raises(InferenceFailedError):
            await build(engine=ScriptedEngine([[]])).scan(
                ScanRequest(model="nsfw_squeezenet", image_base64=png_base64)
            )


# ─── Preprocessing in the worker thread ───────────────────────────────────────


class TestPrepare:
    @staticmethod
    def _recording(descriptor: ModelDescriptor, calls: list[int]) -> ModelDescriptor:
        def preprocess(data: bytes, input_size: int) -> PreparedImage:
            calls.append(input_size)
            return preprocess_classification(data, input_size)

        return dataclasses.replace(
            descriptor, processing=ProcessingPair(preprocess, postprocess_classification)
        )

    def test_expired_deadline_skips_work(
        self, classify_descriptor: ModelDescriptor, png_bytes: bytes
    ) -> None:
        calls: list[int] = []
        now = [0.0]
        deadline = Deadline(1.0, clock=lambda: now[0])
        now[0] = 2.0
        with pytest.raises(ScanTimeoutError):
            _prepare(self._recording(classify_descriptor, calls), png_bytes, deadline)
        assert calls == []

    def test_live_deadline_runs_preprocess(
        self, classify_descriptor: ModelDescriptor, png_bytes: bytes
    ) -> None:
        calls: list[int] = []
        prepared = _prepare(
            self._recording(classify_descriptor, calls), png_bytes, Deadline(60.0)
        )
        assert calls == [224]
        assert prepared.tensor.shape == (1, 3, 224, 224)
