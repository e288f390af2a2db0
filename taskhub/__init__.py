"""
Task Pipeline Hub
Flask Application Factory.

Usage:
    from taskhub import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from taskhub.config import config
from taskhub.middleware.logging_config import configure_logging
from taskhub.middleware.rate_limiter import init_rate_limits
from taskhub.middleware.timing import init_request_timing
from taskhub.models import db
from taskhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections.

    Also hands transaction control to SQLAlchemy (see ``_sqlite_begin``) so
    SAVEPOINTs nest inside a real transaction.
    """
    if "sqlite" in type(dbapi_conn).__module__:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: "development", "testing" or "production".
                     Defaults to the APP_ENV env var, else "development".
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    # ProductionConfig validates its environment on instantiation
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    init_request_timing(app)
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)

    # ── Change feed (session events) ─────────────────────────────────────
    from taskhub.services.change_feed import change_feed
    change_feed.install()

    # ── Models (import so SQLAlchemy sees them) ──────────────────────────
    from taskhub.models import audit, auth, gamification, notification, task, workflow  # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from taskhub.blueprints.analytics_bp import analytics_bp
    from taskhub.blueprints.audit_bp import audit_bp
    from taskhub.blueprints.dispatch_bp import dispatch_bp
    from taskhub.blueprints.health_bp import health_bp
    from taskhub.blueprints.notification_bp import notification_bp
    from taskhub.blueprints.task_bp import task_bp
    from taskhub.blueprints.workflow_bp import workflow_bp

    for bp in (task_bp, dispatch_bp, workflow_bp, analytics_bp, audit_bp,
               notification_bp, health_bp):
        app.register_blueprint(bp)

    init_rate_limits(app, limiter)

    # ── Create tables (dev convenience; production uses flask db upgrade) ─
    if config_name != "production":
        with app.app_context():
            os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()

    # ── App-level error handlers ─────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": str(e.description)})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    logger.info("Task Pipeline Hub started (config=%s)", config_name)
    return app
