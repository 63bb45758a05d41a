"""
Request id and timing hooks.

Every response carries X-Request-ID (taken from the caller when sent)
and X-Request-Duration-Ms. One access log record is written per API
request, tagged with the questionnaire the URL addresses.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000

# Probes hit these every few seconds
_QUIET_PREFIXES = ("/api/v1/health", "/static")


def _log_level(status_code: int, duration_ms: float) -> int:
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    if status_code >= 500:
        return logging.ERROR
    return logging.DEBUG


def init_request_timing(app: Flask):
    @app.before_request
    def _begin():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish(response):
        started = getattr(g, "request_start", None)
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path.startswith(_QUIET_PREFIXES):
            return response

        level = _log_level(response.status_code, duration_ms)
        label = "Slow request" if level == logging.WARNING else "Request"
        logger.log(
            level,
            "%s: %s %s %d",
            label, request.method, request.path, response.status_code,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.remote_addr,
                "questionnaire_id": (request.view_args or {}).get("qid"),
            },
        )
        return response
