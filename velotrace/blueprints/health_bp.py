"""
Probe endpoints for the route quota service.

    GET /api/v1/health        uptime ping
    GET /api/v1/health/ready  load-balancer readiness
    GET /api/v1/health/live   database round trip, snapshot cache, rule policy
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from velotrace.models import db
from velotrace.services import cache_service

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

APP_NAME = "VeloTrace Route Quota Service"


def _probe_database() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Liveness probe: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": APP_NAME}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Report each dependency; 503 when the database cannot be reached.

    The cache is reported but never degrades the service, since the
    ledger falls back to reading snapshots straight from the database.
    """
    checks = {
        "database": _probe_database(),
        "cache": cache_service.health_check(),
        "app": {
            "name": APP_NAME,
            "debug": current_app.debug,
            "testing": current_app.testing,
            "rule_failure_policy": current_app.config.get("RULE_FAILURE_POLICY"),
        },
    }
    healthy = checks["database"]["status"] == "ok"
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
