"""
Rate limiting configuration.

The Limiter instance is created in template_center/__init__.py with no
default limits; this module applies the template-center limits.

Limits are keyed by caller organization when the X-Organization-Id header is
present, else by remote IP. Only mutating requests count against the limit.

Usage:
    from template_center.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def rate_limit_key():
    """Organization id if the caller sent one, else remote IP."""
    org_id = flask_request.headers.get("X-Organization-Id")
    if org_id:
        return f"org:{org_id}"
    return flask_request.remote_addr or "unknown"


def _is_read_request() -> bool:
    return flask_request.method not in WRITE_METHODS


def init_rate_limits(app, limiter):
    """
    Apply the write limit to the template-center blueprint.

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    bp = app.blueprints.get("template_center")
    if bp:
        write_limit = app.config.get("TEMPLATE_CENTER_WRITE_LIMIT", "60 per minute")
        limiter.limit(write_limit, key_func=rate_limit_key, exempt_when=_is_read_request)(bp)
        app.logger.info("Rate limiter configured: template-center writes %s", write_limit)
