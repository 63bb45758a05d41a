"""
VeloTrace Route Quota Service
Blueprint registry helpers.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from velotrace.core.exceptions import (
    NotFoundError,
    PartialFailureError,
    TransientContentionError,
    ValidationError,
)
from velotrace.models import db
from velotrace.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit: max items (default 200, capped at max_limit)
        offset: starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def register_error_handlers(bp):
    """Map service exceptions to standard JSON errors on one blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(TransientContentionError)
    def _handle_contention(error: TransientContentionError):
        response, status = api_error(
            E.CONTENTION,
            "Route is busy, please retry",
            details={"route_id": error.route_id, "attempts": error.attempts},
        )
        response.headers["Retry-After"] = "1"
        return response, status

    @bp.errorhandler(PartialFailureError)
    def _handle_partial_failure(error: PartialFailureError):
        logger.error("Partial submission failure: %s", error,
                     extra={"questionnaire_id": error.questionnaire_id,
                            "route_id": error.route_id, "outcome": "partial_failure"})
        return api_error(
            E.PARTIAL_FAILURE,
            "Submission could not be recorded",
            details={"route_id": error.route_id, "compensated": error.compensated},
        )

    @bp.errorhandler(SQLAlchemyError)
    def _handle_database(error: SQLAlchemyError):
        db.session.rollback()
        logger.exception("Database error on %s %s", request.method, request.path)
        return api_error(E.DATABASE, "Database error")

    return bp
