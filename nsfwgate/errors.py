"""Error taxonomy for the scan pipeline.

Every failure a caller can observe is a ``ScanError`` subclass carrying its own
HTTP status and machine-readable code. The app-level exception handler in
``nsfwgate.main`` renders them as::

    {"error": {"message": "<human readable>", "code": "<code>"}}

``NotReadyError`` is deliberately outside the hierarchy: it is raised once at
startup when no model could be registered and is never mapped to a response.
"""

from __future__ import annotations


class ScanError(Exception):
    """Base class for all caller-visible scan failures."""

    status_code: int = 500
    code: str = "scan_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"message": self.message, "code": self.code}}


class RateLimitedError(ScanError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Rate limit exceeded, please try again later") -> None:
        super().__init__(message)


class InvalidRequestError(ScanError, ValueError):
    status_code = 400
    code = "invalid_request"


class ModelNotFoundError(ScanError):
    status_code = 404
    code = "model_not_found"

    def __init__(self, model: str) -> None:
        super().__init__(f"model '{model}' not found")
        self.model = model


class UnsupportedOperationError(ScanError):
    status_code = 400
    code = "unsupported_operation"


class MissingImageSourceError(ScanError):
    status_code = 400
    code = "missing_image_source"

    def __init__(self, message: str = "either image_base64 or image_url must be provided") -> None:
        super().__init__(message)


class PayloadTooLargeError(ScanError):
    status_code = 413
    code = "payload_too_large"

    def __init__(self, limit_bytes: int) -> None:
        limit_mb = limit_bytes // (1024 * 1024)
        super().__init__(f"file size exceeds limit of {limit_mb} MB")
        self.limit_bytes = limit_bytes


class DecodeFailedError(ScanError):
    status_code = 400
    code = "decode_failed"


class FetchFailedError(ScanError):
    status_code = 502
    code = "fetch_failed"


class InferenceFailedError(ScanError):
    status_code = 500
    code = "inference_failed"


class ScanTimeoutError(ScanError):
    status_code = 504
    code = "scan_timeout"

    def __init__(self, message: str = "scan deadline exceeded") -> None:
        super().__init__(message)


class NotReadyError(RuntimeError):
    """Raised at startup when the model registry is empty."""
