"""
Soft delete support for task rows.

Cleanup never hard-deletes a task that analytics may still replay inside a
reporting window; it stamps ``deleted_at`` instead. Routing lookups filter on
``deleted_at IS NULL`` themselves (see the twin lookup in dispatch);
``query_active()`` is the shorthand for ad-hoc reads.

Usage:
    class Task(SoftDeleteMixin, db.Model):
        ...

    task.soft_delete()
    Task.query_active().filter_by(sibling_task_id=original.id)
"""

from datetime import datetime, timezone

from taskhub.models import db


class SoftDeleteMixin:
    """Adds a nullable ``deleted_at`` marker and active/deleted query helpers."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Rows that have not been soft-deleted."""
        return cls.query.filter(cls.deleted_at.is_(None))
