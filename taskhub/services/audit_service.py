"""
Audit trail queries and device enrichment.

Writers live next to the model (``taskhub.models.audit.write_audit``) so
every service can append inside its own transaction. This module adds the
read side and the best-effort device metadata update that runs after the
mutation has committed.
"""

import logging
import re

from sqlalchemy import select

from taskhub.models import db
from taskhub.models.audit import TaskAuditLog

logger = logging.getLogger(__name__)

_DEVICE_FIELDS = ("device_type", "user_agent", "browser_name", "os_name", "ip_address")

# Order matters: Edge and Opera identify as Chrome, Chrome identifies as Safari.
_BROWSERS = (
    ("Edge", re.compile(r"Edg(e|A|iOS)?/", re.I)),
    ("Opera", re.compile(r"OPR/|Opera", re.I)),
    ("Firefox", re.compile(r"Firefox/|FxiOS/", re.I)),
    ("Chrome", re.compile(r"Chrome/|CriOS/", re.I)),
    ("Safari", re.compile(r"Safari/", re.I)),
)

_OPERATING_SYSTEMS = (
    ("iOS", re.compile(r"iPhone|iPad|iPod", re.I)),
    ("Android", re.compile(r"Android", re.I)),
    ("Windows", re.compile(r"Windows", re.I)),
    ("macOS", re.compile(r"Mac OS X|Macintosh", re.I)),
    ("Linux", re.compile(r"Linux", re.I)),
)


def device_info_from_request(user_agent, ip_address=None) -> dict:
    """Derive device metadata from a User-Agent string."""
    ua = user_agent or ""
    if re.search(r"iPad|Tablet", ua, re.I):
        device_type = "tablet"
    elif re.search(r"Mobi|iPhone|Android", ua, re.I):
        device_type = "mobile"
    elif ua:
        device_type = "desktop"
    else:
        device_type = "unknown"

    browser = next((name for name, rx in _BROWSERS if rx.search(ua)), "Unknown")
    os_name = next((name for name, rx in _OPERATING_SYSTEMS if rx.search(ua)), "Unknown")

    return {
        "device_type": device_type,
        "user_agent": ua[:500] or None,
        "browser_name": browser,
        "os_name": os_name,
        "ip_address": ip_address,
    }


def enrich_latest_audit(task_id, device_info) -> bool:
    """Stamp device metadata onto the newest audit row of ``task_id``.

    Best effort: any failure is logged and swallowed. Returns True when a
    row was updated.
    """
    if not device_info:
        return False
    try:
        stmt = (
            select(TaskAuditLog)
            .where(TaskAuditLog.task_id == task_id)
            .order_by(TaskAuditLog.created_at.desc(), TaskAuditLog.id.desc())
            .limit(1)
        )
        entry = db.session.execute(stmt).scalar_one_or_none()
        if entry is None:
            return False
        for field in _DEVICE_FIELDS:
            if device_info.get(field) is not None:
                setattr(entry, field, device_info[field])
        db.session.commit()
        return True
    except Exception as exc:
        db.session.rollback()
        logger.warning("Audit device enrichment failed: %s", exc, extra={"task_id": task_id})
        return False


def list_audit(task_id=None, action=None, changed_by=None, limit=100, offset=0):
    """Audit rows newest first, optionally filtered."""
    q = TaskAuditLog.query
    if task_id is not None:
        q = q.filter(TaskAuditLog.task_id == task_id)
    if action:
        q = q.filter(TaskAuditLog.action == action)
    if changed_by is not None:
        q = q.filter(TaskAuditLog.changed_by == changed_by)
    total = q.count()
    items = (
        q.order_by(TaskAuditLog.created_at.desc(), TaskAuditLog.id.desc())
        .offset(offset).limit(min(limit, 500)).all()
    )
    return items, total
