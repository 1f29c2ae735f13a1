"""Model registry: which models exist, where they live, what they can do.

The set of servable models is fixed in ``KNOWN_MODELS``; the model directory
only decides which of them are present. ``load_all()`` registers each known
model whose file exists, logs a warning for each one that is missing, and
binds every descriptor to the processing pair for its capability. The
registry is populated exactly once at startup and read without locking
afterwards.

An empty registry is fatal: ``ensure_ready()`` raises ``NotReadyError`` and the
lifespan lets it propagate so the process never starts serving.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from nsfwgate.errors import ModelNotFoundError, NotReadyError
from nsfwgate.inference.processing import PROCESSING, ProcessingPair
from nsfwgate.models.scan import Capability
from nsfwgate.utils.logger import get_logger

logger = get_logger(__name__)

# Names starting with this prefix (case-insensitive) are detection models.
DETECTION_PREFIX = "nudenet"


@dataclass(frozen=True)
class KnownModel:
    filename: str
    input_size: int


KNOWN_MODELS: dict[str, KnownModel] = {
    "mobilenetv2-7": KnownModel("mobilenetv2-7.onnx", 224),
    "nsfw_squeezenet": KnownModel("nsfw_squeezenet.onnx", 224),
    "NudeNet-320n": KnownModel("NudeNet-320n.onnx", 320),
    "NudeNet-640m": KnownModel("NudeNet-640m.onnx", 640),
}


def capability_for(name: str) -> Capability:
    if name.lower().startswith(DETECTION_PREFIX):
        return Capability.DETECT
    return Capability.CLASSIFY


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of one registered model."""

    name: str
    path: str
    capability: Capability
    input_size: int
    processing: ProcessingPair = field(compare=False, repr=False)

    @classmethod
    def create(cls, name: str, path: str, input_size: int) -> "ModelDescriptor":
        capability = capability_for(name)
        return cls(
            name=name,
            path=path,
            capability=capability,
            input_size=input_size,
            processing=PROCESSING[capability],
        )

    @property
    def detects(self) -> bool:
        return self.capability is Capability.DETECT


class ModelRegistry:
    """Set-once mapping of model name to ``ModelDescriptor``."""

    def __init__(self) -> None:
        self._models: dict[str, ModelDescriptor] = {}
        self._loaded = False

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[ModelDescriptor]) -> "ModelRegistry":
        registry = cls()
        registry._register(descriptors)
        return registry

    def load_all(
        self,
        directory: str,
        known: Optional[dict[str, KnownModel]] = None,
    ) -> frozenset[ModelDescriptor]:
        """Register every known model whose file exists under *directory*.

        Raises:
            RuntimeError: If the registry has already been populated.
        """
        known = KNOWN_MODELS if known is None else known
        found: list[ModelDescriptor] = []
        for name, entry in known.items():
            path = os.path.join(directory, entry.filename)
            if not os.path.isfile(path):
                logger.warning("Model file not found, skipping", model=name, path=path)
                continue
            found.append(ModelDescriptor.create(name, path, entry.input_size))

        self._register(found)
        for descriptor in found:
            logger.info(
                "Loaded model",
                model=descriptor.name,
                capability=descriptor.capability.value,
            )
        logger.info("Model registry populated", count=len(found), model_dir=directory)
        return frozenset(found)

    def _register(self, descriptors: Iterable[ModelDescriptor]) -> None:
        if self._loaded:
            raise RuntimeError("model registry is already populated")
        models: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in models:
                raise ValueError(f"duplicate model name: {descriptor.name}")
            models[descriptor.name] = descriptor
        self._models = models
        self._loaded = True

    def lookup(self, name: str) -> ModelDescriptor:
        try:
            return self._models[name]
        except KeyError:
            raise ModelNotFoundError(name) from None

    def list(self) -> list[str]:
        return sorted(self._models)

    def ensure_ready(self) -> None:
        if not self._models:
            raise NotReadyError("no models loaded; refusing to start")

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models.values())
