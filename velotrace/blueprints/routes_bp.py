"""
Route catalog blueprint.

Endpoints:
    GET /api/v1/routes                  catalog (optional ?category=)
    GET /api/v1/routes/<route_id>       single route
"""

import logging

from flask import Blueprint, jsonify, request

from velotrace.blueprints import register_error_handlers
from velotrace.models.route import CATEGORY_ORDER
from velotrace.services import route_catalog
from velotrace.utils.errors import E, api_error

logger = logging.getLogger(__name__)

routes_bp = Blueprint("routes", __name__, url_prefix="/api/v1/routes")
register_error_handlers(routes_bp)


@routes_bp.route("", methods=["GET"])
def list_routes():
    category = request.args.get("category")
    if category and category not in CATEGORY_ORDER:
        return api_error(E.VALIDATION_INVALID, f"Unknown category '{category}'",
                         details={"category": CATEGORY_ORDER})
    routes = route_catalog.list_routes(category=category)
    return jsonify({
        "items": [route_catalog.route_to_dict(r) for r in routes],
        "total": len(routes),
    }), 200


@routes_bp.route("/<route_id>", methods=["GET"])
def get_route(route_id):
    route = route_catalog.get_route(route_id)
    return jsonify(route_catalog.route_to_dict(route)), 200
