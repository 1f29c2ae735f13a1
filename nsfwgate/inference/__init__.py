"""Inference layer: engine contract and capability-indexed processing."""

from nsfwgate.inference.engine import InferenceEngine, StaticInferenceEngine
from nsfwgate.inference.processing import EXPOSED_CLASSES, PROCESSING, PreparedImage, ProcessingPair

__all__ = [
    "EXPOSED_CLASSES",
    "InferenceEngine",
    "PROCESSING",
    "PreparedImage",
    "ProcessingPair",
    "StaticInferenceEngine",
]
