"""JSON body builders for scan results and structured errors.

Success bodies follow the public response shapes:

  ScanResponse       model, nsfw_score, safe_score, is_nsfw, confidence,
                     processing_time_ms, detections[] (detection models only)
  BatchScanResponse  {"results": [{id, nsfw_score, is_nsfw, processing_time_ms}]}
  StatsResponse      total_scans, nsfw_detected, avg_response_time_ms

Failures always use ``{"error": {"message": ..., "code": ...}}``.
"""

from __future__ import annotations

from typing import Any, Iterable

from fastapi.responses import JSONResponse

from nsfwgate.errors import ScanError
from nsfwgate.models.scan import BatchItemResult, Detection, ScanResult, StatsSnapshot


def detection_body(detection: Detection) -> dict[str, Any]:
    return {
        "class": detection.label,
        "confidence": detection.confidence,
        "box": list(detection.box),
    }


def scan_result_body(result: ScanResult) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": result.model,
        "nsfw_score": result.nsfw_score,
        "safe_score": result.safe_score,
        "is_nsfw": result.is_nsfw,
        "confidence": result.confidence,
        "processing_time_ms": result.processing_time_ms,
    }
    if result.detections is not None:
        body["detections"] = [detection_body(d) for d in result.detections]
    return body


def batch_result_body(results: Iterable[BatchItemResult]) -> dict[str, Any]:
    return {
        "results": [
            {
                "id": r.id,
                "nsfw_score": r.nsfw_score,
                "is_nsfw": r.is_nsfw,
                "processing_time_ms": r.processing_time_ms,
            }
            for r in results
        ]
    }


def stats_body(snapshot: StatsSnapshot) -> dict[str, Any]:
    return {
        "total_scans": snapshot.total_scans,
        "nsfw_detected": snapshot.nsfw_detected,
        "avg_response_time_ms": snapshot.avg_response_time_ms,
    }


def build_error_response(error: ScanError) -> JSONResponse:
    """HTTP response for a caller-visible scan failure.

    The status comes from the error class (404 unknown model, 413 oversized
    image, 502 failed download, ...). Rate-limit denials additionally carry no
    quota or reset headers.
    """
    return JSONResponse(status_code=error.status_code, content=error.to_dict())
