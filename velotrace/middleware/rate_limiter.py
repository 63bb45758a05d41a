"""
Per-blueprint Flask-Limiter limits.

The Limiter in velotrace/__init__.py has no default limits; this module
attaches them once every blueprint is registered.

    submission    SUBMISSION_RATE_LIMIT per user (POST only)
    admin_*       60/minute per remote address
    routes        200/minute per remote address
    health        exempt
"""

import logging

from flask import request

logger = logging.getLogger(__name__)

ADMIN_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def _user_or_ip_key():
    body = request.get_json(silent=True)
    user_id = body.get("user_id") if isinstance(body, dict) else None
    return f"user:{user_id}" if user_id else (request.remote_addr or "unknown")


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    blueprints = app.blueprints
    submission_limit = app.config.get("SUBMISSION_RATE_LIMIT", "30/minute")

    if "submission" in blueprints:
        limiter.limit(submission_limit, key_func=_user_or_ip_key, methods=["POST"])(
            blueprints["submission"]
        )
    for name, limit in (("admin_quota", ADMIN_LIMIT), ("admin_rules", ADMIN_LIMIT), ("routes", READ_LIMIT)):
        if name in blueprints:
            limiter.limit(limit)(blueprints[name])
    if "health" in blueprints:
        limiter.exempt(blueprints["health"])

    app.logger.info("Rate limits: submissions %s, admin %s, read %s",
                    submission_limit, ADMIN_LIMIT, READ_LIMIT)
