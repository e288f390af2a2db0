"""
Task Pipeline Hub
Operations workflow blueprint.

Endpoints:
    GET    /api/v1/tasks/<id>/steps           ordered steps with products + progress
    PUT    /api/v1/tasks/<id>/steps           replace the full step list
    POST   /api/v1/tasks/<id>/steps           append one step
    DELETE /api/v1/steps/<id>                 remove a pending step
    POST   /api/v1/steps/<id>/complete        mark a step completed (idempotent)
    GET    /api/v1/operations/board           collect / production / deliver / history tabs
"""

import logging

from flask import Blueprint, jsonify, request

from taskhub.blueprints import stamp_request_device
from taskhub.services import workflow_service
from taskhub.services.workflow_service import StepDraft
from taskhub.utils.errors import register_service_error_handlers
from taskhub.utils.helpers import current_actor_id

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_service_error_handlers(workflow_bp, logger, fallback_message="Workflow operation failed")


# ── Steps of a task ──────────────────────────────────────────────────────────

@workflow_bp.route("/tasks/<int:task_id>/steps", methods=["GET"])
def list_steps(task_id):
    steps = workflow_service.list_steps(task_id)
    return jsonify({
        "steps": [s.to_dict() for s in steps],
        "progress": workflow_service.task_progress(task_id),
    })


@workflow_bp.route("/tasks/<int:task_id>/steps", methods=["PUT"])
def replace_steps(task_id):
    """Body: ``{"steps": [...], "policy": "reset" | "preserve"}``."""
    data = request.get_json(silent=True) or {}
    steps = workflow_service.set_task_steps(
        task_id, data.get("steps") or [],
        actor_id=current_actor_id(),
        policy=data.get("policy"),
    )
    stamp_request_device(task_id)
    return jsonify({"steps": [s.to_dict() for s in steps]})


@workflow_bp.route("/tasks/<int:task_id>/steps", methods=["POST"])
def add_step(task_id):
    data = request.get_json(silent=True) or {}
    draft = StepDraft.from_dict(data)
    step = workflow_service.add_step(task_id, draft, actor_id=current_actor_id())
    stamp_request_device(task_id)
    return jsonify(step.to_dict()), 201


# ── Single step ──────────────────────────────────────────────────────────────

@workflow_bp.route("/steps/<int:step_id>", methods=["DELETE"])
def delete_step(step_id):
    task_id = workflow_service.get_step(step_id).task_id
    workflow_service.remove_step(step_id, actor_id=current_actor_id())
    stamp_request_device(task_id)
    return jsonify({"deleted": True, "id": step_id})


@workflow_bp.route("/steps/<int:step_id>/complete", methods=["POST"])
def complete_step(step_id):
    """Always 200; a repeated call reports ``already_completed: true``."""
    result = workflow_service.complete_step(step_id, actor_id=current_actor_id())
    if not result.already_completed:
        stamp_request_device(result.task_id)
    return jsonify(result.to_dict())


# ── Operations board ─────────────────────────────────────────────────────────

@workflow_bp.route("/operations/board", methods=["GET"])
def operations_board():
    """Query params: ``assigned_to`` (optional user id)."""
    return jsonify(workflow_service.operations_board(request.args.get("assigned_to", type=int)))
