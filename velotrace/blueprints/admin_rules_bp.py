"""
Admin Validation Rules Blueprint.

Rules are data: adding, reordering or deactivating one takes effect on the
next evaluation without a deploy. Payloads are validated on write so the
engine only meets malformed config in exceptional cases.

Endpoints:
    GET    /api/v1/admin/questionnaires/<qid>/rules
    POST   /api/v1/admin/questionnaires/<qid>/rules
           Body: { "type", "config", "enforcement", "error_message",
                   "warning_message"?, "position"?, "is_active"? }
    PUT    /api/v1/admin/questionnaires/<qid>/rules/<rule_id>
    DELETE /api/v1/admin/questionnaires/<qid>/rules/<rule_id>
"""

import logging

from flask import Blueprint, jsonify, request

from velotrace.blueprints import register_error_handlers
from velotrace.services import rule_engine
from velotrace.utils.errors import E, api_error

logger = logging.getLogger(__name__)

admin_rules_bp = Blueprint("admin_rules", __name__, url_prefix="/api/v1/admin/questionnaires")
register_error_handlers(admin_rules_bp)


@admin_rules_bp.route("/<qid>/rules", methods=["GET"])
def list_rules(qid):
    rules = rule_engine.list_rules(qid)
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)}), 200


@admin_rules_bp.route("/<qid>/rules", methods=["POST"])
def create_rule(qid):
    data = request.get_json(silent=True) or {}
    if not data.get("type"):
        return api_error(E.VALIDATION_REQUIRED, "Field 'type' is required")
    rule = rule_engine.create_rule(qid, data)
    return jsonify(rule.to_dict()), 201


@admin_rules_bp.route("/<qid>/rules/<int:rule_id>", methods=["PUT"])
def update_rule(qid, rule_id):
    data = request.get_json(silent=True) or {}
    rule = rule_engine.update_rule(qid, rule_id, data)
    return jsonify(rule.to_dict()), 200


@admin_rules_bp.route("/<qid>/rules/<int:rule_id>", methods=["DELETE"])
def delete_rule(qid, rule_id):
    rule_engine.delete_rule(qid, rule_id)
    return "", 204
