"""
Flask middleware for request logging and metrics.

Provides:
- Request ID tracking (X-Request-ID in and out)
- Per-route request counters and latency histograms
- One structured log line per request
"""

import logging
import re
import time
import uuid

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, set_request_context
from monitoring.metrics import metrics

logger = logging.getLogger("punto.request")

# Record ids (sub_3f9a0c2e1b7d4a55) and transaction hashes
_ID_SEGMENT = re.compile(r"^([a-z]+_[0-9a-f]{16}|0x[0-9a-fA-F]{64}|\d+)$")


def setup_request_logging(app: Flask) -> None:
    """
    Set up request logging middleware for a Flask app.

    Args:
        app: Flask application instance
    """

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        g.start_time = time.perf_counter()
        set_request_context(request_id=g.request_id, method=request.method, path=request.path)
        metrics.increment_gauge("http_requests_active")

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request(response.status_code)
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        clear_request_context()
        metrics.decrement_gauge("http_requests_active")
        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={"request_id": getattr(g, "request_id", "unknown")},
            )


def _record_request(status_code: int) -> None:
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000

    path = normalize_path(request.path)
    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing("http_request_duration_ms", duration_ms, labels={"method": request.method, "path": path})

    level = logging.INFO
    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING

    logger.log(
        level,
        "%s %s -> %d",
        request.method,
        request.path,
        status_code,
        extra={"status_code": status_code, "duration_ms": round(duration_ms, 2)},
    )


def normalize_path(path: str) -> str:
    """
    Normalize path for metrics labels.

    Replaces record ids and hashes with ``:id`` to keep label
    cardinality bounded.
    """
    parts = [":id" if _ID_SEGMENT.match(part) else part for part in path.strip("/").split("/")]
    return "/" + "/".join(parts)
