"""Scan pipeline data contracts.

Request models are pydantic (they double as FastAPI request bodies); every
other contract is a frozen dataclass produced inside the pipeline.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel, Field

from nsfwgate.constants import MAX_BATCH_ITEMS, MIN_BATCH_ITEMS


class Capability(str, enum.Enum):
    """What a registered model produces."""

    CLASSIFY = "classify"
    DETECT = "detect"


# ─── Requests ────────────────────────────────────────────────────────────────


class ScanRequest(BaseModel):
    """Single-image request.

    Exactly one image source is expected. When both are given, the inline
    ``image_base64`` wins and ``image_url`` is ignored.
    """

    model: str = Field(min_length=1)
    image_base64: Optional[str] = None
    image_url: Optional[str] = None


class BatchItem(BaseModel):
    """One image of a batch. ``id`` is echoed back for correlation; keeping
    ids unique within a batch is the caller's responsibility."""

    id: str = Field(min_length=1)
    image_base64: Optional[str] = None
    image_url: Optional[str] = None


class BatchScanRequest(BaseModel):
    model: str = Field(min_length=1)
    images: list[BatchItem] = Field(min_length=MIN_BATCH_ITEMS, max_length=MAX_BATCH_ITEMS)


# ─── Engine outputs ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ClassificationOutput:
    """Raw score pair from a classification model."""

    safe_score: float
    nsfw_score: float


@dataclass(frozen=True)
class Detection:
    """One localized prediction from a detection model.

    box is ``(x1, y1, x2, y2)`` in the model's input coordinates.
    """

    label: str
    confidence: float
    box: tuple[float, float, float, float]


InferenceOutput = Union[ClassificationOutput, list[Detection]]


# ─── Results ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Verdict:
    """Post-processed model output, before timing is attached."""

    nsfw_score: float
    safe_score: float
    is_nsfw: bool
    confidence: float
    detections: Optional[tuple[Detection, ...]] = None


@dataclass(frozen=True)
class ScanResult:
    model: str
    nsfw_score: float
    safe_score: float
    is_nsfw: bool
    confidence: float
    processing_time_ms: int
    detections: Optional[tuple[Detection, ...]] = None

    @classmethod
    def from_verdict(cls, model: str, verdict: Verdict, elapsed_ms: int) -> "ScanResult":
        return cls(
            model=model,
            nsfw_score=verdict.nsfw_score,
            safe_score=verdict.safe_score,
            is_nsfw=verdict.is_nsfw,
            confidence=verdict.confidence,
            processing_time_ms=elapsed_ms,
            detections=verdict.detections,
        )


@dataclass(frozen=True)
class BatchItemResult:
    id: str
    nsfw_score: float
    is_nsfw: bool
    processing_time_ms: int


@dataclass(frozen=True)
class StatsSnapshot:
    total_scans: int
    nsfw_detected: int
    avg_response_time_ms: float
