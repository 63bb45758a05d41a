"""
Environment configuration for ``create_app``.

APP_ENV selects one of ``config`` below (development when unset); every
tunable can also be overridden per app via ``create_app(overrides=...)``.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _int_env(key, default):
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def _database_url(fallback=None):
    # SQLAlchemy 2.0 rejects the legacy postgres:// scheme some hosts still hand out
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    return url.replace("postgres://", "postgresql://", 1)


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Shared by Flask-Limiter storage and the snapshot cache
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    LOG_LEVEL = os.getenv("LOG_LEVEL")

    # Quota ledger
    LEDGER_MAX_ATTEMPTS = _int_env("LEDGER_MAX_ATTEMPTS", 5)
    LEDGER_BACKOFF_BASE_MS = _int_env("LEDGER_BACKOFF_BASE_MS", 10)
    LEDGER_SNAPSHOT_TTL = _int_env("LEDGER_SNAPSHOT_TTL", 5)
    RECONCILE_GRACE_SECONDS = _int_env("RECONCILE_GRACE_SECONDS", 300)

    # Completion limit per route category; a route's own override wins
    CATEGORY_COMPLETION_LIMITS = {
        "main-loop": 70,
        "loop-branch": 35,
        "loop-alternative": 35,
        "diverse": 40,
        "other": 30,
    }

    # "open": a rule that cannot be evaluated allows; "closed": it blocks
    RULE_FAILURE_POLICY = os.getenv("RULE_FAILURE_POLICY", "open").strip().lower()

    SUBMISSION_RATE_LIMIT = os.getenv("SUBMISSION_RATE_LIMIT", "30/minute")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'velotrace_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REDIS_URL = "memory://"
    LEDGER_BACKOFF_BASE_MS = 0


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # ledger UPDATEs must never hang a worker
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, present in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not present
        ]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
