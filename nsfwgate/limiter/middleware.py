"""HTTP admission gate backed by ``SlidingWindowLimiter``.

Runs on every request before routing, so a blocked client never reaches auth,
body parsing, image acquisition or inference. Clients are keyed by remote
address as resolved by slowapi's ``get_remote_address``.

The limiter lives on ``app.state.limiter`` (created by the lifespan). Requests
that arrive before startup has installed it pass through untouched; routes
that need the scan pipeline are gated on readiness separately.
"""

from __future__ import annotations

from typing import Optional

from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from nsfwgate.errors import RateLimitedError
from nsfwgate.limiter.window import Admission, SlidingWindowLimiter
from nsfwgate.models.responses import build_error_response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Deny over-budget clients with HTTP 429."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        limiter: Optional[SlidingWindowLimiter] = getattr(
            request.app.state, "limiter", None
        )
        if limiter is None:
            return await call_next(request)

        client_id = get_remote_address(request)
        if limiter.admit(client_id) is Admission.BLOCKED:
            return build_error_response(RateLimitedError())

        return await call_next(request)
