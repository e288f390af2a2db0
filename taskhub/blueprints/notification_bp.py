"""
Task Pipeline Hub
Notification blueprint.

Endpoints:
    GET  /api/v1/notifications?recipient_id=&unacknowledged=1
    POST /api/v1/notifications/<id>/ack
"""

import logging

from flask import Blueprint, jsonify, request

from taskhub.blueprints import page_params
from taskhub.core.exceptions import ValidationError
from taskhub.services.notification import NotificationService
from taskhub.services.role_service import roles_of
from taskhub.utils.errors import register_service_error_handlers
from taskhub.utils.helpers import current_actor_id

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")
register_service_error_handlers(notification_bp, logger, fallback_message="Notification operation failed")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Direct notifications plus broadcasts to any role the recipient holds.

    ``recipient_id`` defaults to the caller (``X-User-Id``).
    """
    recipient_id = request.args.get("recipient_id", type=int) or current_actor_id()
    if recipient_id is None:
        raise ValidationError("recipient_id is required", details={"recipient_id": "required"})
    unack = request.args.get("unacknowledged", "").lower() in ("1", "true", "yes")
    limit, offset = page_params()
    items, total = NotificationService.list_for_recipient(
        recipient_id, roles=roles_of(recipient_id), unacknowledged_only=unack,
        limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/<int:notification_id>/ack", methods=["POST"])
def acknowledge(notification_id):
    notif = NotificationService.acknowledge(notification_id)
    return jsonify(notif.to_dict())
