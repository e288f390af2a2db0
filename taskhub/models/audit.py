"""
Task Pipeline Hub
Task audit trail.

Models:
    - TaskAuditLog: append-only record of every task and step mutation.

The stage analytics replay ``status_changed`` rows, so ``old_values`` and
``new_values`` keep the raw status strings under the ``status`` key.
"""

import json
from datetime import datetime, timezone

from taskhub.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    "created",
    "updated",
    "deleted",
    "status_changed",
    "assigned",
    "dispatched",
    "mockup_completed",
    "steps_replaced",
    "step_added",
    "step_removed",
    "step_completed",
}


def _load(raw):
    try:
        value = json.loads(raw) if raw else None
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


class TaskAuditLog(db.Model):
    """One row per mutation. Never updated except for device enrichment."""

    __tablename__ = "task_audit_log"
    __table_args__ = (
        db.Index("ix_task_audit_task_ts", "task_id", "created_at"),
        db.Index("ix_task_audit_action", "action"),
        db.Index("ix_task_audit_changed_by", "changed_by"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # No FK: the trail outlives hard-deleted tasks.
    task_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(30), nullable=False,
                       comment="created | updated | status_changed | assigned | deleted | …")
    old_values = db.Column(db.Text, nullable=True, comment="JSON object")
    new_values = db.Column(db.Text, nullable=True, comment="JSON object")
    changed_by = db.Column(db.Integer, nullable=True)
    role = db.Column(db.String(30), nullable=False, default="unknown")

    device_type = db.Column(db.String(20), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    browser_name = db.Column(db.String(50), nullable=True)
    os_name = db.Column(db.String(50), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def old(self):
        """Deserialised ``old_values``; None when absent or not a JSON object."""
        return _load(self.old_values)

    @property
    def new(self):
        return _load(self.new_values)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "action": self.action,
            "old_values": self.old,
            "new_values": self.new,
            "changed_by": self.changed_by,
            "role": self.role,
            "device_type": self.device_type,
            "user_agent": self.user_agent,
            "browser_name": self.browser_name,
            "os_name": self.os_name,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TaskAuditLog {self.id}: {self.action} on task {self.task_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    task_id: int,
    action: str,
    *,
    old_values: dict | None = None,
    new_values: dict | None = None,
    changed_by: int | None = None,
    role: str | None = None,
) -> TaskAuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    When ``role`` is omitted it is looked up from the actor's first role
    grant; actors with no grant (or no actor at all) are stamped ``unknown``.
    """
    if role is None:
        role = _actor_role(changed_by)

    log = TaskAuditLog(
        task_id=task_id,
        action=action,
        old_values=json.dumps(old_values, default=str) if old_values is not None else None,
        new_values=json.dumps(new_values, default=str) if new_values is not None else None,
        changed_by=changed_by,
        role=role or "unknown",
    )
    db.session.add(log)
    db.session.flush()
    return log


def _actor_role(user_id):
    if user_id is None:
        return "unknown"
    from taskhub.models.auth import UserRole

    grant = (
        UserRole.query.filter_by(user_id=user_id)
        .order_by(UserRole.id)
        .first()
    )
    return grant.role if grant else "unknown"
