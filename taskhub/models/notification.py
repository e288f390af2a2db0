"""
Task Pipeline Hub
Notification domain model.

Models:
    - Notification: in-app notification, either addressed to one user or
                    broadcast to everyone holding a role.
"""

from datetime import datetime, timezone

from taskhub.models import db

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_PRIORITIES = {"low", "normal", "high", "urgent"}


class Notification(db.Model):
    """
    One record per recipient, or one record per broadcast.

    A broadcast row has ``is_broadcast`` set, no ``recipient_id`` and the
    target role in ``broadcast_role``.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_recipient", "recipient_id", "is_acknowledged"),
        db.Index("ix_notifications_broadcast_role", "broadcast_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    broadcast_role = db.Column(db.String(30), nullable=True)
    is_broadcast = db.Column(db.Boolean, nullable=False, default=False)

    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    priority = db.Column(db.String(10), nullable=False, default="normal")
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)

    is_acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def acknowledge(self):
        self.is_acknowledged = True
        self.acknowledged_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "broadcast_role": self.broadcast_role,
            "is_broadcast": self.is_broadcast,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "task_id": self.task_id,
            "is_acknowledged": self.is_acknowledged,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
