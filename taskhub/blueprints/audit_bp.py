"""
Task Pipeline Hub
Audit trail blueprint.

Endpoints:
    GET /api/v1/audit   list / filter task audit rows, newest first
"""

import logging

from flask import Blueprint, jsonify, request

from taskhub.blueprints import page_params
from taskhub.services.audit_service import list_audit
from taskhub.utils.errors import register_service_error_handlers

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")
register_service_error_handlers(audit_bp, logger, fallback_message="Audit query failed")


@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Query params:
        task_id     filter by task
        action      exact action name (created, status_changed, ...)
        changed_by  filter by acting user
        limit, offset
    """
    limit, offset = page_params(default_limit=100)
    items, total = list_audit(
        task_id=request.args.get("task_id", type=int),
        action=request.args.get("action"),
        changed_by=request.args.get("changed_by", type=int),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "audit_logs": [log.to_dict() for log in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })
