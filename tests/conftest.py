"""Root test configuration for nsfwgate.

Sets NSFWGATE_AUTH_REQUIRED=false for the entire suite so scan, batch and
stats tests do not need to send an API key. Tests that verify enforcement
(test_auth.py, the auth class in test_api.py) override it with their own
monkeypatch fixture.

Production default is NSFWGATE_AUTH_REQUIRED=true; see nsfwgate/auth.py.
"""

from __future__ import annotations

import base64
import io
from pathlib import Path

import pytest
from PIL import Image

from nsfwgate.registry import KNOWN_MODELS, ModelDescriptor, ModelRegistry


@pytest.fixture(autouse=True)
def disable_auth_for_tests(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NSFWGATE_AUTH_REQUIRED", "false")


@pytest.fixture(autouse=True)
def isolate_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host environment variables from leaking into config tests."""
    for name in (
        "NSFWGATE_CONFIG",
        "PORT",
        "HOST",
        "API_KEY",
        "NSFW_THRESHOLD",
        "MAX_FILE_SIZE_MB",
        "ENABLE_GPU",
        "MODEL_DIR",
        "LOG_LEVEL",
        "RATE_LIMIT_REQUESTS",
        "RATE_LIMIT_WINDOW_S",
        "RATE_LIMIT_BLOCK_S",
        "INFERENCE_CONCURRENCY",
        "SCAN_TIMEOUT_S",
        "CORS_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)


# ─── Images ───────────────────────────────────────────────────────────────────


def _png(width: int = 8, height: int = 6, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def make_png():
    """Factory fixture: make_png(width, height, color) -> PNG bytes."""
    return _png


@pytest.fixture
def png_bytes() -> bytes:
    return _png()


@pytest.fixture
def png_base64(png_bytes: bytes) -> str:
    return base64.b64encode(png_bytes).decode("ascii")


# ─── Models ───────────────────────────────────────────────────────────────────


@pytest.fixture
def model_dir(tmp_path: Path) -> Path:
    """Directory holding placeholder files for every known model."""
    for entry in KNOWN_MODELS.values():
        (tmp_path / entry.filename).write_bytes(b"onnx-placeholder")
    return tmp_path


@pytest.fixture
def registry(model_dir: Path) -> ModelRegistry:
    reg = ModelRegistry()
    reg.load_all(str(model_dir))
    return reg


@pytest.fixture
def classify_descriptor() -> ModelDescriptor:
    return ModelDescriptor.create("nsfw_squeezenet", "/models/nsfw_squeezenet.onnx", 224)


@pytest.fixture
def detect_descriptor() -> ModelDescriptor:
    return ModelDescriptor.create("NudeNet-320n", "/models/NudeNet-320n.onnx", 320)
