"""nsfwgate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - require_ready — readiness dependency for the protected scan routes
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()                 → app.state.config
  2. configure_logging(level)      ← server.log_level
  3. ModelRegistry.load_all()      → app.state.registry (NotReadyError if empty)
  4. create_http_client()          → app.state.http_client
  5. ImageAcquirer, StatsAggregator, engine, ScanOrchestrator
                                   → app.state.{acquirer,stats,engine,orchestrator}
  6. SlidingWindowLimiter          → app.state.limiter (+ reclaimer task)
  7. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel reclaimer → close HTTP client
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nsfwgate import __version__
from nsfwgate.api.middleware import BodySizeLimitMiddleware, RequestLoggingMiddleware
from nsfwgate.api.routes import router as scan_router
from nsfwgate.config import Config, load_config
from nsfwgate.errors import InvalidRequestError, NotReadyError, ScanError
from nsfwgate.health import router as health_router
from nsfwgate.inference.engine import InferenceEngine, StaticInferenceEngine
from nsfwgate.limiter.middleware import RateLimitMiddleware
from nsfwgate.limiter.window import SlidingWindowLimiter
from nsfwgate.models.responses import build_error_response
from nsfwgate.registry import ModelRegistry
from nsfwgate.scanner.acquisition import ImageAcquirer, create_http_client
from nsfwgate.scanner.orchestrator import ScanOrchestrator
from nsfwgate.scanner.stats import StatsAggregator
from nsfwgate.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: HTTP 503 until the lifespan has finished startup."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "message": "nsfwgate is starting up, models are loading",
                "code": "not_ready",
            },
        )


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build every component, then flip ``ready``.

    A config error raises SystemExit and an empty model directory raises
    NotReadyError; either way ``ready`` is never set and nothing is served.
    """
    logger.info("nsfwgate starting up...")

    # ── Step 1: configuration ────────────────────────────────────────────────
    # create_app(config=...) pre-seeds app.state.config; otherwise load it now.
    config: Config = getattr(app.state, "config", None) or load_config()
    app.state.config = config
    configure_logging(log_level=config.server.log_level, json_output=JSON_LOGS)

    # ── Step 2: model registry ───────────────────────────────────────────────
    registry = ModelRegistry()
    registry.load_all(config.scanner.model_dir)
    try:
        registry.ensure_ready()
    except NotReadyError:
        logger.error(
            "No models found, refusing to start",
            model_dir=config.scanner.model_dir,
        )
        raise
    app.state.registry = registry

    # ── Step 3: shared HTTP client for remote images ─────────────────────────
    http_client: httpx.AsyncClient = create_http_client()
    app.state.http_client = http_client

    # ── Step 4: scan pipeline ────────────────────────────────────────────────
    acquirer = ImageAcquirer(http_client, max_bytes=config.scanner.max_file_bytes)
    stats = StatsAggregator()
    engine: Optional[InferenceEngine] = getattr(app.state, "engine", None)
    if engine is None:
        engine = StaticInferenceEngine(enable_gpu=config.scanner.enable_gpu)
    orchestrator = ScanOrchestrator(
        registry=registry,
        acquirer=acquirer,
        engine=engine,
        stats=stats,
        nsfw_threshold=config.scanner.nsfw_threshold,
        inference_concurrency=config.scanner.inference_concurrency,
        scan_timeout_s=config.scanner.scan_timeout_s,
    )
    app.state.acquirer = acquirer
    app.state.stats = stats
    app.state.engine = engine
    app.state.orchestrator = orchestrator

    # ── Step 5: rate limiter + reclaimer ─────────────────────────────────────
    limiter = SlidingWindowLimiter(
        limit=config.rate_limit.requests,
        window_s=config.rate_limit.window_s,
        block_s=config.rate_limit.block_s,
    )
    app.state.limiter = limiter
    reclaimer_task: asyncio.Task[None] = asyncio.create_task(limiter.run_reclaimer())

    # ── Step 6: ready ────────────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "nsfwgate ready",
        models=registry.list(),
        inference_concurrency=config.scanner.inference_concurrency,
    )

    yield

    # ── Shutdown (reverse order) ─────────────────────────────────────────────
    logger.info("nsfwgate shutting down...")
    app.state.ready = False

    if not reclaimer_task.done():
        reclaimer_task.cancel()
        try:
            await reclaimer_task
        except asyncio.CancelledError:
            pass

    try:
        await http_client.aclose()
        logger.info("HTTP client closed")
    except Exception as exc:
        logger.warning("HTTP client close error (non-fatal)", error=str(exc))

    logger.info("nsfwgate shutdown complete")


# ─── Exception handlers ───────────────────────────────────────────────────────


async def scan_error_handler(request: Request, exc: ScanError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Scan error",
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
        path=request.url.path,
    )
    return build_error_response(exc)


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg")
    else:
        message = "invalid request"
    logger.info("Request validation failed", path=request.url.path, error=message)
    return build_error_response(InvalidRequestError(str(message)))


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
    )
    if isinstance(exc.detail, dict):
        error = exc.detail
    else:
        error = {"message": str(exc.detail), "code": "http_error"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": error},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=500,
        content={"error": {"message": "Internal server error", "code": "internal_error"}},
    )


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(
    config: Optional[Config] = None,
    engine: Optional[InferenceEngine] = None,
) -> FastAPI:
    """Create and configure the nsfwgate FastAPI application.

    Call this directly in tests to get an isolated app instance:
        app = create_app(config=Config.defaults(), engine=StaticInferenceEngine())

    Args:
        config: Pre-loaded configuration. When omitted the lifespan calls
                ``load_config()`` and CORS origins come from CORS_ORIGINS.
        engine: Inference engine to serve with. Defaults to
                ``StaticInferenceEngine`` built at startup.

    Returns:
        Configured FastAPI application with lifespan, routers and middleware.
    """
    application = FastAPI(
        title="nsfwgate",
        description="Rate-limited image classification gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    application.state.ready = False
    application.state.config = config
    application.state.engine = engine
    application.state.limiter = None

    if config is not None:
        cors_origins = config.cors_origins
    else:
        cors_origins = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ] or ["*"]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    # In Starlette the LAST-added middleware is OUTERMOST.
    # Effective order: RequestLogging → RateLimit → BodySizeLimit → CORS → routes.
    application.add_middleware(BodySizeLimitMiddleware)
    application.add_middleware(RateLimitMiddleware)
    application.add_middleware(RequestLoggingMiddleware)

    application.include_router(health_router)
    application.include_router(scan_router, dependencies=[Depends(require_ready)])

    application.add_exception_handler(ScanError, scan_error_handler)  # type: ignore[arg-type]
    application.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    application.add_exception_handler(Exception, unhandled_exception_handler)

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
