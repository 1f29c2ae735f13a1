"""Capability-indexed pre/post-processing.

Each registered model is bound, once at registration, to the
``ProcessingPair`` for its capability:

  Capability.CLASSIFY  square resize → (1, 3, S, S) float32 tensor;
                       score pair → verdict.
  Capability.DETECT    letterboxed resize → (1, 3, S, S) float32 tensor;
                       detection list → verdict + detections.

Preprocessing is where undecodable image bytes surface as
``DecodeFailedError``. Postprocessing is where the NSFW threshold is applied
(``is_nsfw := nsfw_score >= threshold``, ``confidence := max(safe, nsfw)``).
"""

from __future__ import annotations

import io
import math
from dataclasses import dataclass
from typing import Callable

import numpy as np
from PIL import Image, UnidentifiedImageError

from nsfwgate.errors import DecodeFailedError, InferenceFailedError
from nsfwgate.models.scan import (
    Capability,
    ClassificationOutput,
    Detection,
    InferenceOutput,
    Verdict,
)

# NudeNet labels that count toward the NSFW score of a detection result.
EXPOSED_CLASSES: frozenset[str] = frozenset(
    {
        "FEMALE_BREAST_EXPOSED",
        "FEMALE_GENITALIA_EXPOSED",
        "MALE_GENITALIA_EXPOSED",
        "BUTTOCKS_EXPOSED",
        "ANUS_EXPOSED",
    }
)

# Grey used by YOLO-style letterboxing.
_LETTERBOX_FILL = (114, 114, 114)


@dataclass(frozen=True)
class PreparedImage:
    """Model-ready input plus the size of the decoded source image."""

    tensor: np.ndarray
    width: int
    height: int


@dataclass(frozen=True)
class ProcessingPair:
    preprocess: Callable[[bytes, int], PreparedImage]
    postprocess: Callable[[InferenceOutput, float], Verdict]


# ─── Preprocessing ───────────────────────────────────────────────────────────


def _decode_rgb(data: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise DecodeFailedError(f"invalid image format: {exc}") from exc


def _to_tensor(img: Image.Image) -> np.ndarray:
    pixels = np.asarray(img, dtype=np.float32) / 255.0
    return pixels.transpose(2, 0, 1)[np.newaxis, ...]


def preprocess_classification(data: bytes, input_size: int) -> PreparedImage:
    img = _decode_rgb(data)
    resized = img.resize((input_size, input_size), Image.Resampling.BILINEAR)
    return PreparedImage(tensor=_to_tensor(resized), width=img.width, height=img.height)


def preprocess_detection(data: bytes, input_size: int) -> PreparedImage:
    """Aspect-preserving resize padded to a square canvas."""
    img = _decode_rgb(data)
    scale = input_size / max(img.width, img.height)
    new_w = max(1, round(img.width * scale))
    new_h = max(1, round(img.height * scale))
    resized = img.resize((new_w, new_h), Image.Resampling.BILINEAR)

    canvas = Image.new("RGB", (input_size, input_size), _LETTERBOX_FILL)
    canvas.paste(resized, ((input_size - new_w) // 2, (input_size - new_h) // 2))
    return PreparedImage(tensor=_to_tensor(canvas), width=img.width, height=img.height)


# ─── Postprocessing ──────────────────────────────────────────────────────────


def _unit_score(name: str, value: float) -> float:
    score = float(value)
    if math.isnan(score) or not 0.0 <= score <= 1.0:
        raise InferenceFailedError(f"{name} out of range [0, 1]: {value}")
    return score


def postprocess_classification(output: InferenceOutput, threshold: float) -> Verdict:
    if not isinstance(output, ClassificationOutput):
        raise InferenceFailedError("classification model returned no score pair")
    safe = _unit_score("safe_score", output.safe_score)
    nsfw = _unit_score("nsfw_score", output.nsfw_score)
    return Verdict(
        nsfw_score=nsfw,
        safe_score=safe,
        is_nsfw=nsfw >= threshold,
        confidence=max(safe, nsfw),
    )


def postprocess_detection(output: InferenceOutput, threshold: float) -> Verdict:
    """Score a detection list by its most confident exposed-class hit."""
    if isinstance(output, ClassificationOutput):
        raise InferenceFailedError("detection model returned a score pair")
    detections = tuple(output)
    for det in detections:
        if not isinstance(det, Detection):
            raise InferenceFailedError(f"unexpected detection entry: {det!r}")
        _unit_score("detection confidence", det.confidence)

    nsfw = max(
        (d.confidence for d in detections if d.label in EXPOSED_CLASSES),
        default=0.0,
    )
    safe = 1.0 - nsfw
    return Verdict(
        nsfw_score=nsfw,
        safe_score=safe,
        is_nsfw=nsfw >= threshold,
        confidence=max(safe, nsfw),
        detections=detections,
    )


PROCESSING: dict[Capability, ProcessingPair] = {
    Capability.CLASSIFY: ProcessingPair(preprocess_classification, postprocess_classification),
    Capability.DETECT: ProcessingPair(preprocess_detection, postprocess_detection),
}
