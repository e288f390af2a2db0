"""
Task Pipeline Hub
Notification service.

Creates, lists and acknowledges in-app notifications. Domain services call
``notify_best_effort`` after their own commit: a failed notification is
logged and never undoes the mutation that triggered it.
"""

import logging

from sqlalchemy import or_

from taskhub.core.exceptions import NotFoundError
from taskhub.models import db
from taskhub.models.notification import NOTIFICATION_PRIORITIES, Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", recipient_id=None, sender_id=None,
               priority="normal", task_id=None):
        """Create and commit one notification addressed to ``recipient_id``."""
        notif = Notification(
            sender_id=sender_id,
            recipient_id=recipient_id,
            is_broadcast=False,
            title=title,
            message=message,
            priority=priority if priority in NOTIFICATION_PRIORITIES else "normal",
            task_id=task_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, role, title, message="", sender_id=None, priority="normal", task_id=None):
        """Create and commit one broadcast notification for every holder of ``role``."""
        notif = Notification(
            sender_id=sender_id,
            recipient_id=None,
            broadcast_role=role,
            is_broadcast=True,
            title=title,
            message=message,
            priority=priority if priority in NOTIFICATION_PRIORITIES else "normal",
            task_id=task_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, roles=None, unacknowledged_only=False,
                           limit=50, offset=0):
        """Direct notifications plus broadcasts to any of ``roles``, newest first."""
        clauses = [Notification.recipient_id == recipient_id]
        if roles:
            clauses.append(
                (Notification.is_broadcast.is_(True)) & (Notification.broadcast_role.in_(roles))
            )
        q = Notification.query.filter(or_(*clauses))
        if unacknowledged_only:
            q = q.filter_by(is_acknowledged=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def acknowledge(notification_id):
        notif = db.session.get(Notification, notification_id)
        if not notif:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_acknowledged:
            notif.acknowledge()
            db.session.commit()
        return notif


def notify_best_effort(*, recipient_id=None, role=None, **kwargs):
    """Send a direct notification, or a role broadcast when no recipient is given.

    Returns the Notification, or None when delivery failed.
    """
    try:
        if recipient_id is not None:
            return NotificationService.create(recipient_id=recipient_id, **kwargs)
        return NotificationService.broadcast(role=role, **kwargs)
    except Exception as exc:
        db.session.rollback()
        logger.warning(
            "Notification delivery failed (recipient=%s role=%s): %s",
            recipient_id, role, exc,
            extra={"task_id": kwargs.get("task_id")},
        )
        return None
