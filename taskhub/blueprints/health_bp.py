"""
Health probes.

Endpoints:
    GET /api/v1/health/ready  process is up
    GET /api/v1/health/live   database round trip plus routing readiness
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from taskhub.models import db
from taskhub.services import role_service
from taskhub.services.change_feed import change_feed

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _check_database():
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except Exception as exc:
        db.session.rollback()
        logger.error("Health probe could not reach the database: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _check_routing():
    """
    Dispatch refuses to run without an estimator; report that here so an
    operator sees it before the first failed send. Informational only.
    """
    cfg = current_app.config
    estimators = role_service.user_ids_with_role(cfg["ESTIMATION_ROLE"])
    operators = role_service.user_ids_with_role(cfg["OPERATIONS_ROLE"])
    return {
        "estimator_configured": bool(estimators),
        "operations_users": len(operators),
        "step_policy": cfg["REDISPATCH_STEP_POLICY"],
    }


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {"database": _check_database()}
    healthy = checks["database"]["status"] == "ok"
    if healthy:
        checks["routing"] = _check_routing()
    checks["change_feed"] = {"subscriptions": change_feed.subscription_count}

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
