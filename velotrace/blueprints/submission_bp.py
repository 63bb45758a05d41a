"""
Submission Blueprint.

User-facing endpoints: route availability, pre-flight validation and the
submission itself.

Endpoints:
    GET    /api/v1/questionnaires/<qid>/routes/availability?user_id=&user_role=&category=
           Returns: {available[], restricted[], warnings[], hidden[], counts}

    POST   /api/v1/questionnaires/<qid>/validate
           Body: { "user_id", "route_id"?, "user_role"? }
           Returns: {can_submit, is_valid, errors[], warnings[], level}

    POST   /api/v1/questionnaires/<qid>/submissions
           Body: { "user_id", "response_id", "route_id"?, "user_role"?,
                   "device_type"?, "submission_source"?, "is_test_submission"? }
           Returns: 201 accepted, 200 accepted_with_warnings,
                    409 quota exceeded (with fresh availability),
                    422 blocked by rules.

    GET    /api/v1/users/<uid>/submissions?questionnaire_id=
           Returns: the user's submission history, newest first.

Layer contract:
    - Blueprint: parse + validate input, call service, return JSON.
    - NO db.session calls here: ledger and history own all writes.
"""

import logging

from flask import Blueprint, jsonify, request

from velotrace.blueprints import register_error_handlers
from velotrace.services import availability, route_catalog, submission_history, submission_service
from velotrace.utils.errors import E, api_error
from velotrace.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

submission_bp = Blueprint("submission", __name__, url_prefix="/api/v1")
register_error_handlers(submission_bp)


def _required(data: dict, *fields):
    missing = [f for f in fields if not str(data.get(f) or "").strip()]
    if missing:
        return api_error(
            E.VALIDATION_REQUIRED,
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
    return None


# ── Availability & validation ─────────────────────────────────────────────────


@submission_bp.route("/questionnaires/<qid>/routes/availability", methods=["GET"])
def route_availability(qid):
    """Classify every catalog route for one user."""
    err = _required(request.args, "user_id")
    if err:
        return err

    category = request.args.get("category")
    routes = route_catalog.list_routes(category=category)
    result = availability.classify(
        routes, qid, request.args["user_id"], request.args.get("user_role"),
    )
    return jsonify(result.to_dict()), 200


@submission_bp.route("/questionnaires/<qid>/validate", methods=["POST"])
def validate(qid):
    data = request.get_json(silent=True) or {}
    err = _required(data, "user_id")
    if err:
        return err

    result = availability.validate_submission(
        data["user_id"], qid, data.get("route_id"), data.get("user_role"),
    )
    return jsonify(result.to_dict()), 200


# ── Submission ────────────────────────────────────────────────────────────────


@submission_bp.route("/questionnaires/<qid>/submissions", methods=["POST"])
def create_submission(qid):
    """Submit a questionnaire response against an optional route.

    Business outcomes (blocked, full) come back as typed results and are
    mapped to 422 / 409 here; store faults are raised and mapped by the
    blueprint error handlers.
    """
    data = request.get_json(silent=True) or {}
    err = _required(data, "user_id", "response_id")
    if err:
        return err

    result = submission_service.submit(
        data["user_id"],
        qid,
        data["response_id"],
        route_id=data.get("route_id") or None,
        user_role=data.get("user_role"),
        device_type=data.get("device_type"),
        submission_source=data.get("submission_source"),
        is_test_submission=parse_bool(data.get("is_test_submission")),
        ip_address=request.remote_addr,
    )

    if result.status == submission_service.STATUS_BLOCKED:
        return api_error(
            E.SUBMISSION_BLOCKED,
            "; ".join(result.decision.messages) or "Submission not allowed",
            details={"decision": result.decision.to_dict()},
        )
    if result.status == submission_service.STATUS_QUOTA_EXCEEDED:
        return api_error(
            E.QUOTA_EXCEEDED,
            "Route has reached its completion limit",
            details={"availability": result.availability.to_dict()},
        )

    status_code = 201 if result.status == submission_service.STATUS_ACCEPTED else 200
    return jsonify(result.to_dict()), status_code


@submission_bp.route("/users/<uid>/submissions", methods=["GET"])
def user_submissions(uid):
    records = submission_history.list_user_submissions(uid, request.args.get("questionnaire_id"))
    return jsonify({
        "items": [r.to_dict() for r in records],
        "total": len(records),
    }), 200
