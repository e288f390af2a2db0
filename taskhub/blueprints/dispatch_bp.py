"""
Task Pipeline Hub
Dispatch blueprint: send a task to production.

Endpoints:
    POST /api/v1/tasks/<id>/dispatch

Body::

    {
        "destinations": {"estimation": true, "operations": true},
        "operations": {
            "assigned_to": 7,
            "delivery_address": "...",
            "delivery_instructions": "...",
            "steps": [{"step_type": "collect", "supplier_name": "ACME", ...}]
        },
        "step_policy": "reset"
    }
"""

import logging

from flask import Blueprint, jsonify, request

from taskhub.blueprints import stamp_request_device
from taskhub.services.dispatch_service import dispatch_to_production
from taskhub.utils.errors import register_service_error_handlers
from taskhub.utils.helpers import current_actor_id

logger = logging.getLogger(__name__)

dispatch_bp = Blueprint("dispatch", __name__, url_prefix="/api/v1")
register_service_error_handlers(dispatch_bp, logger, fallback_message="Failed to send to production")


@dispatch_bp.route("/tasks/<int:task_id>/dispatch", methods=["POST"])
def dispatch(task_id):
    data = request.get_json(silent=True) or {}
    result = dispatch_to_production(
        task_id,
        data.get("destinations") or {},
        actor_id=current_actor_id(),
        operations_details=data.get("operations") or {},
        policy=data.get("step_policy"),
    )
    stamp_request_device(task_id)
    return jsonify(result.to_dict()), 200
