"""
Procurement Workflow Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name]())

Engine tunables (all overridable through the environment):
    WORKFLOW_AT_RISK_WINDOW_DAYS         days before planned end that count as "close"  (7)
    WORKFLOW_AT_RISK_PROGRESS_THRESHOLD  progress % below which a close workflow is at risk (80)
    WORKFLOW_DASHBOARD_UPCOMING_LIMIT    milestones in the dashboard "what's next" list (10)
    WORKFLOW_ACTIVITY_LOG_LIMIT          default activity page size (50)
    WORKFLOW_COMPLETED_WINDOW_DAYS       look-back for "completed this week" (7)
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'procurement_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _normalize_db_url(raw: str) -> str:
    # Heroku-style postgres:// is rejected by SQLAlchemy 2.0
    return raw.replace("postgres://", "postgresql://", 1)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {value}")
    return value


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Flask-Limiter storage; memory:// keeps counters per process
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    WORKFLOW_AT_RISK_WINDOW_DAYS = _env_int("WORKFLOW_AT_RISK_WINDOW_DAYS", 7)
    WORKFLOW_AT_RISK_PROGRESS_THRESHOLD = _env_int("WORKFLOW_AT_RISK_PROGRESS_THRESHOLD", 80)
    WORKFLOW_DASHBOARD_UPCOMING_LIMIT = _env_int("WORKFLOW_DASHBOARD_UPCOMING_LIMIT", 10, minimum=1)
    WORKFLOW_ACTIVITY_LOG_LIMIT = _env_int("WORKFLOW_ACTIVITY_LOG_LIMIT", 50, minimum=1)
    WORKFLOW_COMPLETED_WINDOW_DAYS = _env_int("WORKFLOW_COMPLETED_WINDOW_DAYS", 7)


class DevelopmentConfig(Config):
    """Local development: SQLite file unless DATABASE_URL is set."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _normalize_db_url(os.getenv("DATABASE_URL", "")) or _SQLITE_DEV


class TestingConfig(Config):
    """In-memory SQLite, rate limiting off."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """PostgreSQL with a bounded pool and a 30s statement timeout."""

    SQLALCHEMY_DATABASE_URI = _normalize_db_url(os.getenv("DATABASE_URL", "")) or None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
