"""
Shared pytest fixtures for the VeloTrace test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - catalog: The default 33-route catalog, seeded
    - tracked: Questionnaire "Q1" with ledger entries for the whole catalog
    - make_rule: Factory for ValidationRule rows
"""

import pytest

from scripts.seed_data.routes import ROUTES
from velotrace import create_app
from velotrace.models import db as _db
from velotrace.models.validation_rule import ValidationRule
from velotrace.services import cache_service, quota_ledger, route_catalog

QID = "Q1"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Ids are reused after recreate; stale snapshots would leak between tests
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def catalog():
    """Seed the default route catalog and return the Route rows."""
    route_catalog.seed_routes(ROUTES)
    return route_catalog.list_routes()


@pytest.fixture()
def tracked(catalog):
    """Initialize ledger tracking for every catalog route under Q1."""
    quota_ledger.initialize_tracking(QID, catalog)
    return QID


@pytest.fixture()
def make_rule():
    """Create a ValidationRule row; declared order follows call order."""
    counter = {"position": 0}

    def _make(type_, config=None, enforcement="block", error_message="Not allowed",
              warning_message=None, questionnaire_id=QID, is_active=True):
        rule = ValidationRule(
            questionnaire_id=questionnaire_id,
            position=counter["position"],
            type=type_,
            config=config or {},
            enforcement=enforcement,
            error_message=error_message,
            warning_message=warning_message,
            is_active=is_active,
        )
        counter["position"] += 1
        _db.session.add(rule)
        _db.session.commit()
        return rule

    return _make
