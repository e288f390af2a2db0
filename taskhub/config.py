"""
Task Pipeline Hub
Configuration classes for the Flask app factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Routing and analytics settings are read from the environment once at
import; tests override them on ``app.config`` directly.
"""

import logging
import os
import secrets

logger = logging.getLogger(__name__)

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

STEP_POLICIES = ("reset", "preserve")


def _database_url(var="DATABASE_URL"):
    raw = os.getenv(var, "")
    if not raw:
        return None
    # Heroku-style URLs; SQLAlchemy 2.x wants postgresql://
    return raw.replace("postgres://", "postgresql://", 1)


def _step_policy():
    value = os.getenv("REDISPATCH_STEP_POLICY", "reset").strip().lower()
    if value not in STEP_POLICIES:
        logger.warning("Unknown REDISPATCH_STEP_POLICY %r, using 'reset'", value)
        return "reset"
    return value


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    # Flask-Limiter storage; memory:// keeps counters per process
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # Role names the router resolves users by
    ESTIMATION_ROLE = os.getenv("ESTIMATION_ROLE", "estimation")
    OPERATIONS_ROLE = os.getenv("OPERATIONS_ROLE", "operations")
    # What a re-dispatch does with an operations twin's completed steps
    REDISPATCH_STEP_POLICY = _step_policy()
    DISPATCH_RATE_LIMIT = os.getenv("DISPATCH_RATE_LIMIT", "60/minute")

    # Task type whose audit trail feeds the stage-duration report
    ANALYTICS_PIPELINE_TYPE = os.getenv("ANALYTICS_PIPELINE_TYPE", "quotation")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or (
        "sqlite:///" + os.path.join(basedir, "instance", "taskhub_dev.db")
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Refuses to start without an explicit database and secret."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    # No wildcard default in production
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL must be set in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
