"""HTTP middleware: request body ceiling and per-request access logging.

BodySizeLimitMiddleware
  Rejects bodies larger than ``config.scanner.max_request_body_bytes`` with
  HTTP 413 before routing, so an oversized upload is never parsed:
    1. Content-Length fast path: reject on the declared size alone.
    2. No Content-Length (chunked): accumulate with a rolling cap, reject as
       soon as it is crossed, and cache the body for the route handler.

RequestLoggingMiddleware
  Assigns every request a ULID, binds it into the structlog context, returns
  it as ``X-Request-ID`` and writes one ``Request`` log line when the
  response is ready.
"""

from __future__ import annotations

import time
from typing import Optional

from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from nsfwgate.config import Config, ScannerConfig
from nsfwgate.utils.logger import clear_request_id, get_logger, set_request_id
from nsfwgate.utils.ulid import generate_ulid

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_INVALID_CONTENT_LENGTH_BODY: dict = {
    "error": {
        "message": "Invalid Content-Length header",
        "code": "invalid_request",
    }
}


def _payload_too_large(limit: int) -> JSONResponse:
    return JSONResponse(
        status_code=413,
        content={
            "error": {
                "message": f"Request body too large. Maximum size: {limit} bytes",
                "code": "payload_too_large",
            }
        },
    )


def _body_limit(request: Request) -> int:
    config: Optional[Config] = getattr(request.app.state, "config", None)
    scanner = config.scanner if config is not None else ScannerConfig()
    return scanner.max_request_body_bytes


# ─── Body size ceiling ───────────────────────────────────────────────────────


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Enforce the request body ceiling before any route handler runs.

    Content-Length equal to the limit is accepted; one byte more is not.

    Args:
        max_bytes: Fixed ceiling. When omitted it is read per request from
                   ``app.state.config``.
    """

    def __init__(self, app: ASGIApp, max_bytes: Optional[int] = None) -> None:
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        limit = self.max_bytes if self.max_bytes is not None else _body_limit(request)
        content_length_header = request.headers.get("content-length")

        if content_length_header is not None:
            try:
                declared_size = int(content_length_header)
            except ValueError:
                logger.warning(
                    "Invalid Content-Length header",
                    value=content_length_header,
                    path=request.url.path,
                )
                return JSONResponse(status_code=400, content=_INVALID_CONTENT_LENGTH_BODY)

            if declared_size > limit:
                logger.warning(
                    "Request body too large (Content-Length)",
                    declared_size=declared_size,
                    limit=limit,
                    path=request.url.path,
                )
                return _payload_too_large(limit)

            return await call_next(request)

        if request.method in ("GET", "HEAD", "OPTIONS"):
            return await call_next(request)

        body_chunks: list[bytes] = []
        total_size = 0
        async for chunk in request.stream():
            total_size += len(chunk)
            if total_size > limit:
                logger.warning(
                    "Request body too large (chunked)",
                    accumulated_size=total_size,
                    limit=limit,
                    path=request.url.path,
                )
                return _payload_too_large(limit)
            body_chunks.append(chunk)

        # Request.body() returns the cached bytes instead of re-reading the stream.
        request._body = b"".join(body_chunks)  # type: ignore[attr-defined]
        return await call_next(request)


# ─── Access log ──────────────────────────────────────────────────────────────


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured log line per request, tagged with a ULID request id."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = generate_ulid()
        set_request_id(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            latency_ms = round((time.perf_counter() - start) * 1000, 2)
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                "Request",
                client_ip=get_remote_address(request),
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                latency_ms=latency_ms,
                user_agent=request.headers.get("user-agent", ""),
            )
            return response
        finally:
            clear_request_id()
