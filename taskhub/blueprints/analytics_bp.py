"""
Task Pipeline Hub
Analytics blueprint: stage durations, activity, KPIs and leaderboards.

Endpoints:
    GET /api/v1/analytics/stages?window=today|week|month|all
    GET /api/v1/analytics/stages/current
    GET /api/v1/analytics/transitions?limit=
    GET /api/v1/analytics/tasks/<id>/history
    GET /api/v1/analytics/activity?limit=
    GET /api/v1/analytics/users/<id>/scorecard?period=
    GET /api/v1/analytics/leaderboard?role=&period=&metric=&limit=

All endpoints are read-only.
"""

import logging

from flask import Blueprint, jsonify, request

from taskhub.core.exceptions import ValidationError
from taskhub.services import analytics_service, kpi_service
from taskhub.utils.errors import register_service_error_handlers

logger = logging.getLogger(__name__)

analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/v1/analytics")
register_service_error_handlers(analytics_bp, logger, fallback_message="Analytics query failed")


def _limit(default, maximum=100):
    value = request.args.get("limit", default, type=int)
    return max(1, min(value, maximum))


# ── Stage durations ──────────────────────────────────────────────────────────

@analytics_bp.route("/stages", methods=["GET"])
def stage_metrics():
    window = request.args.get("window", "all")
    return jsonify(analytics_service.stage_report(window, pipeline_type=request.args.get("type")))


@analytics_bp.route("/stages/current", methods=["GET"])
def current_stage_ages():
    return jsonify({"items": analytics_service.current_stage_ages(pipeline_type=request.args.get("type"))})


@analytics_bp.route("/transitions", methods=["GET"])
def transitions():
    return jsonify({"items": analytics_service.transitions_report(
        _limit(10), pipeline_type=request.args.get("type"))})


@analytics_bp.route("/tasks/<int:task_id>/history", methods=["GET"])
def task_history(task_id):
    return jsonify(analytics_service.task_history(task_id))


@analytics_bp.route("/activity", methods=["GET"])
def activity():
    return jsonify({"items": analytics_service.activity_feed(
        _limit(20), pipeline_type=request.args.get("type"))})


# ── KPIs ─────────────────────────────────────────────────────────────────────

@analytics_bp.route("/users/<int:user_id>/scorecard", methods=["GET"])
def scorecard(user_id):
    return jsonify(kpi_service.user_scorecard(user_id, request.args.get("period", "today")))


@analytics_bp.route("/leaderboard", methods=["GET"])
def leaderboard():
    role = request.args.get("role")
    if not role:
        raise ValidationError("role is required", details={"role": "required"})
    period = request.args.get("period", "week")
    metric = request.args.get("metric", "tasks_completed")
    rows = kpi_service.leaderboard(role, period, metric, limit=_limit(10))
    return jsonify({"role": role, "period": period, "metric": metric, "items": rows})
