"""Inference engine contract and the bundled deterministic engine.

The gateway never talks to a model runtime directly. Anything that can turn a
preprocessed image into raw scores implements ``InferenceEngine``:

    async def infer(descriptor, image) -> ClassificationOutput | list[Detection]

Engines receive the ``PreparedImage`` produced by the descriptor's
preprocessing step and must not apply the NSFW threshold themselves; that is
postprocessing's job. Raising any non-``ScanError`` exception is reported to
the caller as ``inference_failed``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, Sequence, runtime_checkable

from nsfwgate.models.scan import ClassificationOutput, Detection, InferenceOutput
from nsfwgate.utils.logger import get_logger

if TYPE_CHECKING:
    from nsfwgate.inference.processing import PreparedImage
    from nsfwgate.registry import ModelDescriptor

logger = get_logger(__name__)


@runtime_checkable
class InferenceEngine(Protocol):
    async def infer(
        self, descriptor: "ModelDescriptor", image: "PreparedImage"
    ) -> InferenceOutput:
        ...


_DEFAULT_DETECTIONS: tuple[Detection, ...] = (
    Detection(label="FACE_FEMALE", confidence=0.85, box=(48.0, 32.0, 112.0, 104.0)),
    Detection(label="ARMPITS_EXPOSED", confidence=0.42, box=(20.0, 120.0, 70.0, 160.0)),
)


class StaticInferenceEngine:
    """Engine that returns fixed outputs regardless of the input.

    Used when no model runtime is plugged in, and in tests where the scores
    must be known in advance.

    Args:
        safe_score:  Safe probability returned for classification models.
        nsfw_score:  NSFW probability returned for classification models.
        detections:  Detections returned for detection models. Boxes are in
                     the model's input coordinates and are clipped to it.
        enable_gpu:  Accepted for parity with runtime-backed engines; ignored.
    """

    def __init__(
        self,
        safe_score: float = 0.7,
        nsfw_score: float = 0.3,
        detections: Optional[Sequence[Detection]] = None,
        enable_gpu: bool = False,
    ) -> None:
        self.safe_score = safe_score
        self.nsfw_score = nsfw_score
        self.detections: tuple[Detection, ...] = (
            _DEFAULT_DETECTIONS if detections is None else tuple(detections)
        )
        self.calls = 0
        if enable_gpu:
            logger.info("GPU requested but the static engine runs without a device")

    async def infer(
        self, descriptor: "ModelDescriptor", image: "PreparedImage"
    ) -> InferenceOutput:
        self.calls += 1
        if descriptor.detects:
            limit = float(descriptor.input_size)
            return [
                Detection(
                    label=d.label,
                    confidence=d.confidence,
                    box=tuple(min(max(v, 0.0), limit) for v in d.box),  # type: ignore[arg-type]
                )
                for d in self.detections
            ]
        return ClassificationOutput(safe_score=self.safe_score, nsfw_score=self.nsfw_score)
