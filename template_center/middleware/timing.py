"""
Request timing middleware.

Logs every API request with method, path, status and duration, tagged with a
request id. Adds X-Request-Duration-Ms and X-Request-ID to all responses.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Slow request threshold (ms)
SLOW_THRESHOLD_MS = 1000


def _scope_ids():
    view_args = request.view_args or {}
    project_id = view_args.get("project_id")
    organization_id = request.headers.get("X-Organization-Id")
    try:
        organization_id = int(organization_id) if organization_id else None
    except ValueError:
        organization_id = None
    return organization_id, project_id


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:12])

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")

        if request.path.startswith("/static"):
            return response

        organization_id, project_id = _scope_ids()
        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "remote_addr": request.remote_addr,
            "request_id": getattr(g, "request_id", ""),
            "organization_id": organization_id,
            "project_id": project_id,
        }
        if duration_ms > SLOW_THRESHOLD_MS:
            logger.warning("Slow request: %s %s %d (%.0fms)",
                           request.method, request.path,
                           response.status_code, duration_ms, extra=extra)
        elif response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)",
                         request.method, request.path,
                         response.status_code, duration_ms, extra=extra)
        else:
            logger.info("Request: %s %s %d (%.0fms)",
                        request.method, request.path,
                        response.status_code, duration_ms, extra=extra)

        return response
