"""
Task Pipeline Hub
Operations workflow model.

Models:
    - WorkflowStep: one ordered logistics step of an operations task.

Step types:
    collect               pick goods up from a supplier
    deliver_to_supplier   bring goods to a supplier (production site)
    deliver_to_client     hand goods over to the client
    supplier_to_supplier  move goods between two suppliers
"""

import re
from datetime import datetime, timezone

from taskhub.models import db

# ── Constants ────────────────────────────────────────────────────────────────

STEP_TYPES = ["collect", "deliver_to_supplier", "deliver_to_client", "supplier_to_supplier"]
STEP_STATUSES = {"pending", "completed"}

STEP_SHORT_LABELS = {
    "collect": "Collect",
    "deliver_to_supplier": "To Supplier",
    "deliver_to_client": "To Client",
    "supplier_to_supplier": "S→S Transfer",
}

# Rows written before the origin had its own columns carried it as a
# "FROM: <name> (<address>)" first line in location_notes.
_LEGACY_FROM_RE = re.compile(r"^FROM:\s*(?P<name>[^(\n]*?)\s*(?:\((?P<addr>[^)\n]*)\))?\s*(?:\n|$)")


class WorkflowStep(db.Model):
    __tablename__ = "task_workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("task_id", "step_order", name="uq_step_order_per_task"),
        db.Index("ix_steps_type_status", "step_type", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    step_type = db.Column(db.String(30), nullable=False,
                          comment="collect | deliver_to_supplier | deliver_to_client | supplier_to_supplier")
    supplier_name = db.Column(db.String(200), nullable=True)
    location_address = db.Column(db.String(500), nullable=True)
    location_notes = db.Column(db.Text, nullable=True)
    from_supplier_name = db.Column(db.String(200), nullable=True)
    from_location_address = db.Column(db.String(500), nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="pending")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    task = db.relationship("Task", back_populates="workflow_steps")
    products = db.relationship(
        "ProductLine", back_populates="workflow_step", lazy="select",
        cascade="all, delete-orphan", order_by="ProductLine.position",
    )

    @property
    def is_completed(self):
        return self.status == "completed"

    @property
    def short_label(self):
        return STEP_SHORT_LABELS.get(self.step_type, self.step_type)

    def origin(self):
        """(name, address) of the source supplier for S→S steps.

        Falls back to the legacy ``FROM:`` prefix for rows that predate the
        explicit columns.
        """
        if self.from_supplier_name or self.from_location_address:
            return self.from_supplier_name, self.from_location_address
        name, addr, _ = parse_legacy_location_notes(self.location_notes)
        return name, addr

    def to_dict(self, include_products=True):
        from_name, from_addr = self.origin()
        d = {
            "id": self.id,
            "task_id": self.task_id,
            "step_order": self.step_order,
            "step_type": self.step_type,
            "supplier_name": self.supplier_name,
            "location_address": self.location_address,
            "location_notes": self.location_notes,
            "from_supplier_name": from_name,
            "from_location_address": from_addr,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_products:
            d["products"] = [p.to_dict() for p in self.products]
        return d

    def __repr__(self):
        return f"<WorkflowStep {self.id}: task={self.task_id} #{self.step_order} {self.step_type}>"


def parse_legacy_location_notes(notes):
    """Split ``"FROM: name (addr)\\nrest"`` into ``(name, addr, rest)``.

    Notes without the prefix come back as ``(None, None, notes)``.
    """
    if not notes:
        return None, None, notes
    m = _LEGACY_FROM_RE.match(notes)
    if not m:
        return None, None, notes
    name = (m.group("name") or "").strip() or None
    addr = (m.group("addr") or "").strip() or None
    rest = notes[m.end():] or None
    return name, addr, rest
