"""Liveness and readiness endpoints.

  GET /health  liveness: 200 ``{"status": "ok"}`` whenever the process serves.
  GET /ready   readiness: 200 ``{"status": "ok", "models": N}`` once the
               lifespan has finished and at least one model is registered;
               503 otherwise.

Neither endpoint requires an API key. Both still pass through the rate
limiter like every other request.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from nsfwgate.registry import ModelRegistry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready", response_model=None)
async def ready(request: Request) -> Any:
    registry: Optional[ModelRegistry] = getattr(request.app.state, "registry", None)
    is_ready = getattr(request.app.state, "ready", False)
    if not is_ready or registry is None or len(registry) == 0:
        return JSONResponse(
            status_code=503,
            content={"status": "starting", "models": len(registry) if registry else 0},
        )
    return {"status": "ok", "models": len(registry)}
