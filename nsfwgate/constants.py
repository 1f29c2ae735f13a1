"""Shared constants for nsfwgate.

All size limits, timeouts and rate-limit defaults used across modules are
defined here. Import from here rather than repeating literals.
"""

# ─── Image size limits ───────────────────────────────────────────────────────

# Default per-image ceiling (MAX_FILE_SIZE_MB).
DEFAULT_MAX_FILE_SIZE_MB: int = 10

BYTES_PER_MB: int = 1024 * 1024

# Remote image downloads are abandoned after this many seconds.
IMAGE_FETCH_TIMEOUT_S: float = 30.0

# Allowance for the JSON envelope around inline images in a request body.
REQUEST_ENVELOPE_BYTES: int = 64 * 1024

# ─── Batch policy ────────────────────────────────────────────────────────────

MIN_BATCH_ITEMS: int = 1
MAX_BATCH_ITEMS: int = 10

# ─── Classification defaults ─────────────────────────────────────────────────

DEFAULT_NSFW_THRESHOLD: float = 0.7

DEFAULT_MODEL_DIR: str = "/models"

# ─── Rate limiter defaults ───────────────────────────────────────────────────

# 100 requests per rolling minute; offenders are blocked for one hour.
DEFAULT_RATE_LIMIT_REQUESTS: int = 100
DEFAULT_RATE_LIMIT_WINDOW_S: float = 60.0
DEFAULT_RATE_LIMIT_BLOCK_S: float = 3600.0

# Idle client windows are reclaimed on this interval.
RATE_LIMIT_RECLAIM_INTERVAL_S: float = 3600.0

# ─── Inference ───────────────────────────────────────────────────────────────

# Maximum simultaneous engine calls. 0 disables the gate.
DEFAULT_INFERENCE_CONCURRENCY: int = 10

# Overall budget for one scan/detect/batch call.
DEFAULT_SCAN_TIMEOUT_S: float = 60.0

# ─── HTTP client pool ────────────────────────────────────────────────────────

POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 20
POOL_KEEPALIVE_EXPIRY: float = 30.0
