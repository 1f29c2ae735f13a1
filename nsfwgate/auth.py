"""API key authentication for protected endpoints.

Provides ``require_api_key()``: a FastAPI Depends()-compatible dependency that
compares the ``X-API-Key`` header against ``config.api_key``. It runs before
the route handler, so a rejected request never reaches the scan pipeline.

Auth control:
  - NSFWGATE_AUTH_REQUIRED=true  → key enforced (default)
  - NSFWGATE_AUTH_REQUIRED=false → check skipped (local development and tests)

With auth required and no key configured, every protected request is
rejected.
"""

from __future__ import annotations

import hmac
import os

from fastapi import HTTPException, Request

from nsfwgate.utils.logger import get_logger

logger = get_logger(__name__)

API_KEY_HEADER = "X-API-Key"


def _is_auth_required() -> bool:
    """Read NSFWGATE_AUTH_REQUIRED per request so tests can monkeypatch it."""
    return os.environ.get("NSFWGATE_AUTH_REQUIRED", "true").lower() == "true"


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"message": message, "code": "unauthorized"},
    )


async def require_api_key(request: Request) -> None:
    """FastAPI dependency: reject requests without the configured API key.

    Raises:
        HTTPException(401): Header missing, or present but not matching.
    """
    if not _is_auth_required():
        return

    provided = request.headers.get(API_KEY_HEADER, "")
    if not provided:
        logger.warning(
            "Authentication failed: no API key",
            path=request.url.path,
            method=request.method,
        )
        raise _unauthorized("API key is required")

    expected: str = request.app.state.config.api_key
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(
            "Authentication failed: invalid key",
            path=request.url.path,
            method=request.method,
        )
        raise _unauthorized("Invalid API key")
