"""
Task Pipeline Hub
Blueprint registry and request helpers shared by the blueprints.
"""

from flask import request


def page_params(default_limit=50, max_limit=500):
    """Read ``limit``/``offset`` query params.

    Query params:
        limit  max items (default ``default_limit``, capped at max_limit)
        offset starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset


def stamp_request_device(task_id):
    """Copy the caller's User-Agent / IP onto the newest audit row of ``task_id``."""
    from taskhub.services.audit_service import device_info_from_request, enrich_latest_audit

    info = device_info_from_request(request.headers.get("User-Agent"), request.remote_addr)
    return enrich_latest_audit(task_id, info)
