"""
Admin Quota Blueprint.

Route-completion tracking administration and dashboards.

Endpoints:
    POST   /api/v1/admin/quotas/<qid>/initialize
           Body: { "route_ids"?: [...], "category_limits"?: {category: int} }
           Creates missing ledger entries for catalog routes (idempotent).

    GET    /api/v1/admin/quotas/<qid>/summary?include_inactive=
           Returns: per-category rollup plus questionnaire totals.

    GET    /api/v1/admin/quotas/<qid>/routes
           Returns: active RouteQuotaInfo views.

    GET    /api/v1/admin/quotas?questionnaire_id=&limit=&offset=
           Returns: every ledger entry (paginated).

    PATCH  /api/v1/admin/quotas/entries/<entry_id>
           Body: { "completion_limit"?: int, "is_active"?: bool }

    POST   /api/v1/admin/quotas/bulk
           Body: { "action": "activate|deactivate|reset", "entry_ids": [...] }

    POST   /api/v1/admin/quotas/<qid>/reconcile
           Body: { "dry_run"?: bool, "grace_seconds"?: int }

    GET    /api/v1/admin/quotas/statistics?questionnaire_id=
           Returns: per-route submission counts from submission records.

Entries are never deleted through this API; deactivate them instead.
"""

import logging

from flask import Blueprint, jsonify, request

from velotrace.blueprints import paginate_query, register_error_handlers
from velotrace.models.quota import QuotaLedgerEntry
from velotrace.services import quota_ledger, reporting, route_catalog
from velotrace.utils.errors import E, api_error
from velotrace.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

admin_quota_bp = Blueprint("admin_quota", __name__, url_prefix="/api/v1/admin/quotas")
register_error_handlers(admin_quota_bp)

VALID_BULK_ACTIONS = ("activate", "deactivate", "reset")


def _int_list(value, field):
    if not isinstance(value, list) or not value:
        return None, api_error(E.VALIDATION_REQUIRED, f"{field} must be a non-empty list")
    if not all(isinstance(v, int) and not isinstance(v, bool) for v in value):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must contain integer ids")
    return value, None


# ── Tracking setup ────────────────────────────────────────────────────────────


@admin_quota_bp.route("/<qid>/initialize", methods=["POST"])
def initialize(qid):
    """Start route-completion tracking for a questionnaire."""
    data = request.get_json(silent=True) or {}
    routes = route_catalog.list_routes()

    route_ids = data.get("route_ids")
    if route_ids is not None:
        if not isinstance(route_ids, list):
            return api_error(E.VALIDATION_INVALID, "route_ids must be a list")
        wanted = set(route_ids)
        routes = [r for r in routes if r.route_id in wanted]
        unknown = wanted - {r.route_id for r in routes}
        if unknown:
            return api_error(E.NOT_FOUND, "Unknown route id(s)", details={"route_ids": sorted(unknown)})

    category_limits = data.get("category_limits")
    if category_limits is not None and not isinstance(category_limits, dict):
        return api_error(E.VALIDATION_INVALID, "category_limits must be an object")

    result = quota_ledger.initialize_tracking(qid, routes, category_limits=category_limits)
    return jsonify({"questionnaire_id": qid, **result}), 201 if result["created"] else 200


# ── Dashboards ────────────────────────────────────────────────────────────────


@admin_quota_bp.route("/<qid>/summary", methods=["GET"])
def summary(qid):
    include_inactive = parse_bool(request.args.get("include_inactive"))
    categories = reporting.summarize(qid, include_inactive=include_inactive)
    return jsonify({
        "questionnaire_id": qid,
        "categories": [c.to_dict() for c in categories],
        "totals": reporting.questionnaire_totals(qid),
    }), 200


@admin_quota_bp.route("/<qid>/routes", methods=["GET"])
def route_quotas(qid):
    items = reporting.route_quotas(qid)
    return jsonify({"items": items, "total": len(items)}), 200


@admin_quota_bp.route("", methods=["GET"])
def list_entries():
    """All ledger entries across questionnaires, for the admin table."""
    query = QuotaLedgerEntry.query
    qid = request.args.get("questionnaire_id")
    if qid:
        query = query.filter_by(questionnaire_id=qid)
    query = query.order_by(QuotaLedgerEntry.questionnaire_id, QuotaLedgerEntry.id)
    items, total = paginate_query(query)
    return jsonify({"items": [e.to_dict() for e in items], "total": total}), 200


@admin_quota_bp.route("/statistics", methods=["GET"])
def statistics():
    stats = reporting.submission_statistics(request.args.get("questionnaire_id"))
    return jsonify({"items": stats, "total": len(stats)}), 200


# ── Mutations ─────────────────────────────────────────────────────────────────


@admin_quota_bp.route("/entries/<int:entry_id>", methods=["PATCH"])
def update_entry(entry_id):
    data = request.get_json(silent=True) or {}
    if "completion_limit" not in data and "is_active" not in data:
        return api_error(E.VALIDATION_REQUIRED, "Provide completion_limit and/or is_active")

    is_active = data.get("is_active")
    if is_active is not None and not isinstance(is_active, bool):
        return api_error(E.VALIDATION_INVALID, "is_active must be a boolean")

    entry = quota_ledger.update_entry(
        entry_id,
        completion_limit=data.get("completion_limit"),
        is_active=is_active,
    )
    return jsonify(entry.to_dict()), 200


@admin_quota_bp.route("/bulk", methods=["POST"])
def bulk():
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip()
    if action not in VALID_BULK_ACTIONS:
        return api_error(E.VALIDATION_INVALID, f"Invalid action '{action}'",
                         details={"valid_actions": list(VALID_BULK_ACTIONS)})
    entry_ids, err = _int_list(data.get("entry_ids"), "entry_ids")
    if err:
        return err

    if action == "reset":
        count = quota_ledger.reset_entries(entry_ids)
    else:
        count = quota_ledger.set_active(entry_ids, action == "activate")

    logger.info("Bulk %s applied to %d ledger entr(y/ies)", action, count)
    return jsonify({"action": action, "updated": count}), 200


@admin_quota_bp.route("/<qid>/reconcile", methods=["POST"])
def reconcile(qid):
    data = request.get_json(silent=True) or {}
    grace = data.get("grace_seconds")
    if grace is not None and (not isinstance(grace, int) or isinstance(grace, bool) or grace < 0):
        return api_error(E.VALIDATION_INVALID, "grace_seconds must be a non-negative integer")

    report = quota_ledger.reconcile(qid, grace_seconds=grace, dry_run=parse_bool(data.get("dry_run")))
    return jsonify(report), 200
