"""Config loading for nsfwgate.

Values are layered, lowest to highest precedence:

  1. Coded defaults (the dataclasses below).
  2. An optional YAML file, searched in order:
       - ``config_path`` argument (tests or explicit override)
       - ``NSFWGATE_CONFIG`` environment variable
       - ``.nsfwgate/config.yaml`` in the working directory
  3. Environment variables (PORT, API_KEY, NSFW_THRESHOLD, ...).

A missing config file is not an error. A malformed file or an invalid value
writes a message to stderr and raises SystemExit(1) so the process never
starts with a half-understood configuration.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, NoReturn, Optional

import yaml

from nsfwgate.constants import (
    BYTES_PER_MB,
    DEFAULT_INFERENCE_CONCURRENCY,
    DEFAULT_MAX_FILE_SIZE_MB,
    DEFAULT_MODEL_DIR,
    DEFAULT_NSFW_THRESHOLD,
    DEFAULT_RATE_LIMIT_BLOCK_S,
    DEFAULT_RATE_LIMIT_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_S,
    DEFAULT_SCAN_TIMEOUT_S,
    MAX_BATCH_ITEMS,
    REQUEST_ENVELOPE_BYTES,
)
from nsfwgate.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATHS = [".nsfwgate/config.yaml"]

_TRUE_VALUES = frozenset({"1", "t", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "f", "false", "no", "off"})


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"


@dataclass
class ScannerConfig:
    """Scan pipeline configuration.

    nsfw_threshold:        scores at or above this are reported as NSFW.
    max_file_size_mb:      per-image ceiling for inline and fetched images.
    enable_gpu:            passed through to the inference engine.
    model_dir:             directory holding the model files.
    inference_concurrency: simultaneous engine calls (0 = no gate).
    scan_timeout_s:        overall deadline for a single scan/batch call.
    """

    nsfw_threshold: float = DEFAULT_NSFW_THRESHOLD
    max_file_size_mb: int = DEFAULT_MAX_FILE_SIZE_MB
    enable_gpu: bool = False
    model_dir: str = DEFAULT_MODEL_DIR
    inference_concurrency: int = DEFAULT_INFERENCE_CONCURRENCY
    scan_timeout_s: float = DEFAULT_SCAN_TIMEOUT_S

    @property
    def max_file_bytes(self) -> int:
        return self.max_file_size_mb * BYTES_PER_MB

    @property
    def max_request_body_bytes(self) -> int:
        """Largest acceptable request body: a full batch of base64 images."""
        encoded_per_image = (self.max_file_bytes + 2) // 3 * 4
        return encoded_per_image * MAX_BATCH_ITEMS + REQUEST_ENVELOPE_BYTES


@dataclass
class RateLimitConfig:
    """Per-client sliding-window admission settings."""

    requests: int = DEFAULT_RATE_LIMIT_REQUESTS
    window_s: float = DEFAULT_RATE_LIMIT_WINDOW_S
    block_s: float = DEFAULT_RATE_LIMIT_BLOCK_S


@dataclass
class Config:
    """Root configuration object.

    All fields have safe defaults; nsfwgate can start without any config file
    as long as MODEL_DIR contains at least one known model.
    """

    server: ServerConfig = field(default_factory=ServerConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    api_key: str = ""
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Merge a parsed YAML mapping onto the defaults.

        Every value goes through the same parser as its environment variable,
        so a quoted ``"0.5"`` becomes a float and ``high`` is rejected.
        Unknown keys are ignored; range checks happen in ``validate_config``.

        Raises:
            SystemExit(1): A section is not a mapping or a value cannot be
                           parsed.
        """
        config = cls(path=path)
        for section in ("server", "scanner", "rate_limit"):
            section_raw = raw.get(section)
            if section_raw is None:
                continue
            if not isinstance(section_raw, dict):
                _fail(f"'{section}' must be a mapping.")
            target = getattr(config, section)
            for _env_name, field_section, attr, parser in _FIELDS:
                if field_section != section:
                    continue
                value = section_raw.get(attr)
                if value is None:
                    continue
                try:
                    setattr(target, attr, parser(value))
                except (TypeError, ValueError):
                    _fail(f"{section}.{attr} is invalid: {value!r}")

        config.api_key = str(raw.get("api_key", "") or "")
        if raw.get("cors_origins") is not None:
            config.cors_origins = _parse_origins(raw["cors_origins"])
        return config


# ─── Config loading ──────────────────────────────────────────────────────────


def _fail(msg: str) -> NoReturn:
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load, merge and validate the nsfwgate configuration.

    Returns:
        Config with file values merged onto defaults and env overrides applied.

    Raises:
        SystemExit(1): On YAML parse errors, a non-mapping document, or any
                       value that fails validation.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("NSFWGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.debug("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
    else:
        config = Config.from_dict(_read_yaml(found_path), path=found_path)

    _apply_env_overrides(config)
    validate_config(config)

    if not config.api_key:
        logger.warning("API_KEY is not set; protected endpoints will reject every request")

    logger.info(
        "Config loaded",
        path=found_path,
        model_dir=config.scanner.model_dir,
        nsfw_threshold=config.scanner.nsfw_threshold,
        max_file_size_mb=config.scanner.max_file_size_mb,
        rate_limit=config.rate_limit.requests,
        rate_window_s=config.rate_limit.window_s,
    )
    return config


def _read_yaml(path: str) -> dict:
    try:
        with open(path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(f"Failed to parse {path}: {exc}")
    except OSError as exc:
        _fail(f"Could not read {path}: {exc}")

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        _fail(f"{path} is not a valid YAML mapping.")
    return raw


# ─── Value parsing ───────────────────────────────────────────────────────────


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_int(value: Any) -> int:
    """int() that refuses booleans and fractional floats (YAML ``1.5``)."""
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"not an integer: {value!r}")
    return int(value)


def _parse_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    return float(value)


def _parse_origins(value: Any) -> list[str]:
    """Comma-separated string or YAML list of CORS origins."""
    if isinstance(value, str):
        return [o.strip() for o in value.split(",") if o.strip()]
    if isinstance(value, list):
        return [str(o).strip() for o in value if str(o).strip()]
    _fail(f"cors_origins must be a string or a list, got {value!r}")


# env var -> (section, attribute, parser); YAML keys match the attribute names.
_FIELDS: list[tuple[str, str, str, Callable[[Any], Any]]] = [
    ("HOST", "server", "host", str),
    ("PORT", "server", "port", _parse_int),
    ("LOG_LEVEL", "server", "log_level", str),
    ("NSFW_THRESHOLD", "scanner", "nsfw_threshold", _parse_float),
    ("MAX_FILE_SIZE_MB", "scanner", "max_file_size_mb", _parse_int),
    ("ENABLE_GPU", "scanner", "enable_gpu", _parse_bool),
    ("MODEL_DIR", "scanner", "model_dir", str),
    ("INFERENCE_CONCURRENCY", "scanner", "inference_concurrency", _parse_int),
    ("SCAN_TIMEOUT_S", "scanner", "scan_timeout_s", _parse_float),
    ("RATE_LIMIT_REQUESTS", "rate_limit", "requests", _parse_int),
    ("RATE_LIMIT_WINDOW_S", "rate_limit", "window_s", _parse_float),
    ("RATE_LIMIT_BLOCK_S", "rate_limit", "block_s", _parse_float),
]


# ─── Environment overrides ───────────────────────────────────────────────────


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides in place.

    Empty values are treated as unset. Unparsable values raise SystemExit(1).
    """
    for env_name, section, attr, parser in _FIELDS:
        value = os.environ.get(env_name)
        if not value:
            continue
        try:
            parsed = parser(value)
        except ValueError:
            _fail(f"{env_name} environment variable is invalid: '{value}'")
        setattr(getattr(config, section), attr, parsed)

    api_key = os.environ.get("API_KEY")
    if api_key:
        config.api_key = api_key

    origins = os.environ.get("CORS_ORIGINS")
    if origins:
        config.cors_origins = _parse_origins(origins)


# ─── Validation ──────────────────────────────────────────────────────────────


def validate_config(config: Config) -> None:
    """Range-check merged, already-parsed values.

    Raises:
        SystemExit(1): On the first invalid value.
    """
    scanner = config.scanner
    limit = config.rate_limit

    if not isinstance(config.server.port, int) or not 0 < config.server.port < 65536:
        _fail(f"port must be an integer in 1..65535, got {config.server.port!r}")
    if not 0.0 <= scanner.nsfw_threshold <= 1.0:
        _fail(f"nsfw_threshold must be within [0, 1], got {scanner.nsfw_threshold}")
    if scanner.max_file_size_mb <= 0:
        _fail(f"max_file_size_mb must be positive, got {scanner.max_file_size_mb}")
    if scanner.inference_concurrency < 0:
        _fail(f"inference_concurrency must be >= 0, got {scanner.inference_concurrency}")
    if scanner.scan_timeout_s <= 0:
        _fail(f"scan_timeout_s must be positive, got {scanner.scan_timeout_s}")
    if limit.requests <= 0:
        _fail(f"rate_limit.requests must be positive, got {limit.requests}")
    if limit.window_s <= 0 or limit.block_s <= 0:
        _fail("rate_limit.window_s and rate_limit.block_s must be positive")
