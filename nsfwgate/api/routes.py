"""Protected scan endpoints.

  GET  /models          registered model names
  POST /scan            single image (JSON, base64 or URL)
  POST /scan/multipart  single image (multipart form: ``file`` + ``model``)
  POST /scan/batch      1-10 images against one model
  POST /scan/detect     single image, detection-capable models only
  GET  /stats           process-wide counters

Every route requires the API key (``require_api_key``); ``create_app()`` adds
the readiness gate when it includes this router. Handlers only translate
between HTTP and the orchestrator: ``ScanError`` subclasses propagate to the
app-level exception handler, which renders the structured error body.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from nsfwgate.auth import require_api_key
from nsfwgate.models.responses import batch_result_body, scan_result_body, stats_body
from nsfwgate.models.scan import BatchScanRequest, ScanRequest
from nsfwgate.registry import ModelRegistry
from nsfwgate.scanner.orchestrator import ScanOrchestrator
from nsfwgate.scanner.stats import StatsAggregator

router = APIRouter(tags=["scan"], dependencies=[Depends(require_api_key)])


def _orchestrator(request: Request) -> ScanOrchestrator:
    return request.app.state.orchestrator


@router.get("/models")
async def list_models(request: Request) -> dict[str, Any]:
    registry: ModelRegistry = request.app.state.registry
    return {"models": registry.list()}


@router.post("/scan")
async def scan(body: ScanRequest, request: Request) -> dict[str, Any]:
    result = await _orchestrator(request).scan(body)
    return scan_result_body(result)


@router.post("/scan/multipart")
async def scan_multipart(
    request: Request,
    file: UploadFile = File(...),
    model: str = Form(...),
) -> dict[str, Any]:
    try:
        data = await file.read()
    finally:
        await file.close()
    result = await _orchestrator(request).scan_bytes(model, data)
    return scan_result_body(result)


@router.post("/scan/batch")
async def scan_batch(body: BatchScanRequest, request: Request) -> dict[str, Any]:
    results = await _orchestrator(request).scan_batch(body.model, body.images)
    return batch_result_body(results)


@router.post("/scan/detect")
async def detect(body: ScanRequest, request: Request) -> dict[str, Any]:
    result = await _orchestrator(request).detect(body)
    return scan_result_body(result)


@router.get("/stats")
async def stats(request: Request) -> dict[str, Any]:
    aggregator: StatsAggregator = request.app.state.stats
    return stats_body(aggregator.snapshot())
