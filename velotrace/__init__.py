"""
VeloTrace route quota service.

    from velotrace import create_app
    app = create_app()            # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from velotrace.config import config
from velotrace.middleware.logging_config import configure_logging
from velotrace.middleware.rate_limiter import init_rate_limits
from velotrace.middleware.timing import init_request_timing
from velotrace.models import db
from velotrace.utils.errors import E, api_error

logger = logging.getLogger(__name__)

migrate = Migrate()
# no global limit, applied per blueprint
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None, overrides=None):
    """
    Build the Flask application.

    ``overrides`` is applied on top of the selected config class, e.g.
    ``create_app("testing", {"SQLALCHEMY_DATABASE_URI": ...})``.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    app.config.update(overrides or {})

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = [o.strip() for o in app.config.get("CORS_ORIGINS", "*").split(",") if o.strip()]
    CORS(app, origins=origins if origins and origins != ["*"] else "*")

    init_request_timing(app)

    # model modules must be imported before create_all / autogenerate
    from velotrace.models import quota, route, submission, validation_rule  # noqa: F401

    if config_name != "production":
        if app.instance_path in app.config["SQLALCHEMY_DATABASE_URI"]:
            os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    from velotrace.blueprints.admin_quota_bp import admin_quota_bp
    from velotrace.blueprints.admin_rules_bp import admin_rules_bp
    from velotrace.blueprints.health_bp import health_bp
    from velotrace.blueprints.routes_bp import routes_bp
    from velotrace.blueprints.submission_bp import submission_bp

    for bp in (routes_bp, submission_bp, admin_quota_bp, admin_rules_bp, health_bp):
        app.register_blueprint(bp)

    _register_http_errors(app)
    _register_cli(app)
    init_rate_limits(app, limiter)

    return app


def _register_http_errors(app):
    @app.errorhandler(404)
    def _not_found(e):
        return api_error(E.NOT_FOUND, "Not found")

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, "Method not allowed")

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": e.description})

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("Unhandled error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("seed-routes")
    def seed_routes_cmd():
        """Seed the default route catalog (33 routes, idempotent)."""
        from scripts.seed_data.routes import ROUTES
        from velotrace.services.route_catalog import seed_routes

        result = seed_routes(ROUTES)
        click.echo(f"Routes seeded: {result['created']} created, {result['skipped']} skipped.")

    @app.cli.command("init-tracking")
    @click.argument("questionnaire_id")
    def init_tracking_cmd(questionnaire_id):
        """Create ledger entries for every catalog route under QUESTIONNAIRE_ID."""
        from velotrace.services import quota_ledger, route_catalog

        result = quota_ledger.initialize_tracking(questionnaire_id, route_catalog.list_routes())
        click.echo(f"Tracking initialized: {result['created']} created, {result['skipped']} skipped.")

    @app.cli.command("reconcile-quotas")
    @click.argument("questionnaire_id")
    @click.option("--dry-run", is_flag=True, help="Report without changing counters.")
    @click.option("--grace-seconds", type=int, default=None,
                  help="Skip entries touched more recently than this.")
    def reconcile_quotas_cmd(questionnaire_id, dry_run, grace_seconds):
        """Free completion slots leaked by abandoned reservations."""
        from velotrace.services.quota_ledger import reconcile

        report = reconcile(questionnaire_id, grace_seconds=grace_seconds, dry_run=dry_run)
        for item in report["adjusted"]:
            click.echo(f"  {item['route_id']}: {item['from']} -> {item['to']}")
        click.echo(
            f"Checked {report['checked']} entries: {len(report['adjusted'])} adjusted, "
            f"{len(report['skipped_recent'])} skipped (recent), "
            f"{len(report['under_counted'])} under-counted."
        )
