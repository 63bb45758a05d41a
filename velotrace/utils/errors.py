"""Standardised API error responses.

Every error body has the same shape::

    {"error": "<message>", "code": "ERR_...", "request_id": "...", "details": {...}}

``details`` is omitted when empty; ``request_id`` echoes the X-Request-ID
of the failing request so a user report can be matched to the logs.

Usage
-----
    from velotrace.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Route not found")
    return api_error(E.QUOTA_EXCEEDED, "Route is full", details={"availability": ...})
"""

from __future__ import annotations

from flask import g, has_request_context, jsonify


class E:
    """Machine-readable error codes, grouped by their default HTTP status."""

    # 400: malformed or missing input
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # 404, 405
    NOT_FOUND = "ERR_NOT_FOUND"
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"

    # 409: the route has no capacity left
    QUOTA_EXCEEDED = "ERR_QUOTA_EXCEEDED"

    # 422: well-formed input refused by a business rule
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    SUBMISSION_BLOCKED = "ERR_SUBMISSION_BLOCKED"

    # 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # 503: retryable ledger contention
    CONTENTION = "ERR_CONTENTION"

    # 500
    PARTIAL_FAILURE = "ERR_PARTIAL_FAILURE"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    **dict.fromkeys((E.VALIDATION_REQUIRED, E.VALIDATION_INVALID), 400),
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.QUOTA_EXCEEDED: 409,
    **dict.fromkeys((E.VALIDATION_CONSTRAINT, E.SUBMISSION_BLOCKED), 422),
    E.RATE_LIMITED: 429,
    E.CONTENTION: 503,
    **dict.fromkeys((E.PARTIAL_FAILURE, E.DATABASE, E.INTERNAL), 500),
}


def status_for(code: str) -> int:
    """Default HTTP status of an error code (400 when unknown)."""
    return _STATUS_BY_CODE.get(code, 400)


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(jsonify(body), http_status)`` for a Flask view or error handler.

    ``status`` overrides the code's default status.
    """
    body: dict = {"error": message, "code": code}
    if has_request_context() and getattr(g, "request_id", None):
        body["request_id"] = g.request_id
    if details:
        body["details"] = details
    return jsonify(body), status or status_for(code)
