"""
Task Pipeline Hub
Task blueprint.

Endpoints:
    POST   /api/v1/tasks                          create a task
    GET    /api/v1/tasks                          list live tasks
    GET    /api/v1/tasks/<id>                     task detail (with products)
    POST   /api/v1/tasks/<id>/status              caller-asserted status change
    POST   /api/v1/tasks/<id>/send-to-designer    flag as awaiting mockup
    POST   /api/v1/tasks/<id>/mockup/complete     designer done, clone to estimator
    POST   /api/v1/tasks/<id>/mockup/return       hand back to estimation, no clone
    DELETE /api/v1/tasks/<id>                     soft delete
"""

import logging

from flask import Blueprint, jsonify, request

from taskhub.blueprints import page_params, stamp_request_device
from taskhub.services import status_service, task_service
from taskhub.utils.errors import register_service_error_handlers
from taskhub.utils.helpers import current_actor_id

logger = logging.getLogger(__name__)

task_bp = Blueprint("tasks", __name__, url_prefix="/api/v1")
register_service_error_handlers(task_bp, logger, fallback_message="Task operation failed")


@task_bp.route("/tasks", methods=["POST"])
def create_task():
    data = request.get_json(silent=True) or {}
    task = task_service.create_task(data, actor_id=current_actor_id())
    stamp_request_device(task.id)
    return jsonify(task.to_dict(include_products=True)), 201


@task_bp.route("/tasks", methods=["GET"])
def list_tasks():
    """
    Live tasks, newest first.

    Query params:
        status, type, assigned_to, limit, offset
    """
    limit, offset = page_params(default_limit=100)
    items, total = task_service.list_tasks(
        status=request.args.get("status"),
        task_type=request.args.get("type"),
        assigned_to=request.args.get("assigned_to", type=int),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [t.to_dict() for t in items], "total": total})


@task_bp.route("/tasks/<int:task_id>", methods=["GET"])
def get_task(task_id):
    task = task_service.get_active_task(task_id)
    return jsonify(task.to_dict(include_products=True))


@task_bp.route("/tasks/<int:task_id>/status", methods=["POST"])
def change_status(task_id):
    """Body: ``{"status": "...", "expected_from": "..."}`` (expected_from optional)."""
    data = request.get_json(silent=True) or {}
    task = status_service.transition_status(
        task_id,
        data.get("status"),
        actor_id=current_actor_id(),
        role=data.get("role"),
        expected_from=data.get("expected_from"),
    )
    stamp_request_device(task.id)
    return jsonify(task.to_dict())


@task_bp.route("/tasks/<int:task_id>/send-to-designer", methods=["POST"])
def send_to_designer(task_id):
    task = status_service.send_to_designer(task_id, actor_id=current_actor_id())
    stamp_request_device(task.id)
    return jsonify(task.to_dict())


@task_bp.route("/tasks/<int:task_id>/mockup/complete", methods=["POST"])
def complete_mockup(task_id):
    """Designer remarks are required; the response carries the new clone."""
    data = request.get_json(silent=True) or {}
    designer_id = current_actor_id()
    clone = status_service.complete_mockup(task_id, data.get("remarks"), designer_id=designer_id)
    stamp_request_device(task_id)
    original = task_service.get_active_task(task_id)
    return jsonify({"clone": clone.to_dict(include_products=True), "original": original.to_dict()}), 201


@task_bp.route("/tasks/<int:task_id>/mockup/return", methods=["POST"])
def return_mockup(task_id):
    data = request.get_json(silent=True) or {}
    task = status_service.return_mockup_to_estimation(
        task_id, data.get("remarks"), actor_id=current_actor_id(),
    )
    stamp_request_device(task.id)
    return jsonify(task.to_dict())


@task_bp.route("/tasks/<int:task_id>", methods=["DELETE"])
def delete_task(task_id):
    task_service.soft_delete_task(task_id, actor_id=current_actor_id())
    stamp_request_device(task_id)
    return jsonify({"deleted": True, "id": task_id})
