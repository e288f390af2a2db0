"""
Task Pipeline Hub
Task domain model.

Models:
    - Task:        the mutable work item routed between estimation, design
                   and operations.
    - ProductLine: a product row owned by a task, optionally scoped to one
                   workflow step.

Status strings are persisted verbatim in audit payloads and replayed by the
stage analytics, so the values below must never be renamed.
"""

from datetime import datetime, timezone
from enum import Enum

from taskhub.models import db
from taskhub.models.soft_delete import SoftDeleteMixin

# ── Constants ────────────────────────────────────────────────────────────────

# Primary pipeline, in order.
PRIMARY_STATUSES = [
    "todo",
    "supplier_quotes",
    "client_approval",
    "admin_cost_approval",
    "quotation_bill",
    "production",
    "done",
]

# Side branches reachable from the primary pipeline.
SIDE_STATUSES = ["with_client", "mockup", "rejected"]

TASK_STATUSES = set(PRIMARY_STATUSES) | set(SIDE_STATUSES)

TASK_TYPES = {"quotation", "production", "general", "invoice", "design"}

TASK_PRIORITIES = {"low", "medium", "high", "urgent"}

# Estimation stages replayed by the stage-duration analytics.
ANALYTICS_STAGES = [
    "todo",
    "supplier_quotes",
    "client_approval",
    "admin_cost_approval",
    "quotation_bill",
]

STAGE_LABELS = {
    "todo": "To Do",
    "supplier_quotes": "Supplier Quotes",
    "client_approval": "Client Approval",
    "admin_cost_approval": "Admin Cost Approval",
    "admin_approval": "Admin Cost Approval",
    "quotation_bill": "Quotation Bill",
    "production": "Production",
    "done": "Completed",
    "with_client": "With Client",
    "mockup": "Mockup",
    "rejected": "Rejected",
    "approved": "Approved",
    "delivery": "Delivery",
}

PRODUCT_APPROVAL_STATUSES = {"pending", "approved", "rejected"}


def stage_label(status):
    """Human label for a status string; unknown values are title-cased."""
    if not status:
        return "N/A"
    return STAGE_LABELS.get(status) or status.replace("_", " ").title()


class DesignOverlayState(str, Enum):
    """Design-team progress, tracked orthogonally to ``Task.status``.

    Each member maps to exactly one combination of the historical flags
    ``(sent_to_designer_mockup, mockup_completed_by_designer,
    came_from_designer_done)``.
    """

    NONE = "none"                        # (False, False, False)
    AWAITING_MOCKUP = "awaiting_mockup"  # (True,  False, False)
    MOCKUP_RETURNED = "mockup_returned"  # (False, True,  True)
    DESIGNER_DONE = "designer_done"      # (False, False, True)

    @property
    def flags(self):
        return _OVERLAY_FLAGS[self]

    @classmethod
    def from_flags(cls, sent_to_designer_mockup=False, mockup_completed_by_designer=False,
                   came_from_designer_done=False):
        """Map legacy booleans onto a state.

        Combinations that never occurred historically collapse onto the
        nearest meaningful state: a completed mockup wins over a pending one.
        """
        if mockup_completed_by_designer:
            return cls.MOCKUP_RETURNED
        if sent_to_designer_mockup:
            return cls.AWAITING_MOCKUP
        if came_from_designer_done:
            return cls.DESIGNER_DONE
        return cls.NONE


_OVERLAY_FLAGS = {
    DesignOverlayState.NONE: (False, False, False),
    DesignOverlayState.AWAITING_MOCKUP: (True, False, False),
    DesignOverlayState.MOCKUP_RETURNED: (False, True, True),
    DesignOverlayState.DESIGNER_DONE: (False, False, True),
}


def _utcnow():
    return datetime.now(timezone.utc)


class Task(SoftDeleteMixin, db.Model):
    """
    A work item moving through the estimation, design and operations
    pipelines.

    ``sibling_task_id`` points from an operations twin back to the task it
    mirrors; ``cloned_from_task_id`` records clone provenance for tasks
    created when a designer finishes a mockup.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("ix_tasks_status", "status"),
        db.Index("ix_tasks_assigned_to", "assigned_to"),
        db.Index("ix_tasks_type_status", "type", "status"),
        # At most one live operations twin per original task.
        db.Index(
            "uq_tasks_sibling_active",
            "sibling_task_id",
            unique=True,
            sqlite_where=db.text("deleted_at IS NULL"),
            postgresql_where=db.text("deleted_at IS NULL"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    client_name = db.Column(db.String(200), nullable=True)
    supplier_name = db.Column(db.String(200), nullable=True)
    priority = db.Column(db.String(10), default="medium", comment="low | medium | high | urgent")
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(30), nullable=False, default="todo")
    type = db.Column(db.String(20), nullable=False, default="general",
                     comment="quotation | production | general | invoice | design")
    previous_status = db.Column(db.String(30), nullable=True)
    status_changed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    design_state = db.Column(
        db.String(20), nullable=False, default=DesignOverlayState.NONE.value,
        comment="none | awaiting_mockup | mockup_returned | designer_done",
    )
    admin_removed_from_production = db.Column(db.Boolean, nullable=False, default=False)
    completed_by_designer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    admin_remarks = db.Column(db.Text, nullable=True)

    delivery_address = db.Column(db.String(500), nullable=True)
    delivery_instructions = db.Column(db.Text, nullable=True)

    sibling_task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True,
        comment="Twin in another pipeline: set on the operations copy, points at the original",
    )
    cloned_from_task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="Clone provenance: the task this one was cloned from",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    products = db.relationship(
        "ProductLine", back_populates="task", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProductLine.position",
    )
    workflow_steps = db.relationship(
        "WorkflowStep", back_populates="task", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowStep.step_order",
    )

    # ── Design overlay ───────────────────────────────────────────────────

    @property
    def overlay(self) -> DesignOverlayState:
        return DesignOverlayState(self.design_state or DesignOverlayState.NONE.value)

    @overlay.setter
    def overlay(self, state: DesignOverlayState):
        self.design_state = DesignOverlayState(state).value

    @property
    def sent_to_designer_mockup(self) -> bool:
        return self.overlay.flags[0]

    @property
    def mockup_completed_by_designer(self) -> bool:
        return self.overlay.flags[1]

    @property
    def came_from_designer_done(self) -> bool:
        return self.overlay.flags[2]

    @property
    def linked_task_id(self):
        """Whichever task reference is set, for consumers of the old single link."""
        return self.sibling_task_id or self.cloned_from_task_id

    # ── Helpers ──────────────────────────────────────────────────────────

    def snapshot(self, *fields) -> dict:
        """Partial JSON-shaped view of the row, used for audit payloads."""
        data = self.to_dict()
        if not fields:
            return data
        return {f: data.get(f) for f in fields}

    def to_dict(self, include_products=False):
        d = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "client_name": self.client_name,
            "supplier_name": self.supplier_name,
            "priority": self.priority,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "type": self.type,
            "previous_status": self.previous_status,
            "status_changed_at": self.status_changed_at.isoformat() if self.status_changed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "created_by": self.created_by,
            "design_state": self.design_state,
            "sent_to_designer_mockup": self.sent_to_designer_mockup,
            "mockup_completed_by_designer": self.mockup_completed_by_designer,
            "came_from_designer_done": self.came_from_designer_done,
            "admin_removed_from_production": self.admin_removed_from_production,
            "completed_by_designer_id": self.completed_by_designer_id,
            "admin_remarks": self.admin_remarks,
            "delivery_address": self.delivery_address,
            "delivery_instructions": self.delivery_instructions,
            "sibling_task_id": self.sibling_task_id,
            "cloned_from_task_id": self.cloned_from_task_id,
            "linked_task_id": self.linked_task_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }
        if include_products:
            d["products"] = [p.to_dict() for p in self.products.all()]
        return d

    def __repr__(self):
        return f"<Task {self.id}: {self.status} {self.title[:40]}>"


class ProductLine(db.Model):
    """A product row. Step-scoped rows are replaced together with their step."""

    __tablename__ = "task_products"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    workflow_step_id = db.Column(
        db.Integer, db.ForeignKey("task_workflow_steps.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    product_name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.Float, nullable=True)
    unit = db.Column(db.String(20), default="pcs")
    supplier_name = db.Column(db.String(200), nullable=True)
    estimated_price = db.Column(db.Numeric(12, 2), nullable=True)
    final_price = db.Column(db.Numeric(12, 2), nullable=True)
    approval_status = db.Column(db.String(20), nullable=False, default="pending")
    designer_completed = db.Column(db.Boolean, default=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    task = db.relationship("Task", back_populates="products")
    workflow_step = db.relationship("WorkflowStep", back_populates="products")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "workflow_step_id": self.workflow_step_id,
            "product_name": self.product_name,
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit,
            "supplier_name": self.supplier_name,
            "estimated_price": float(self.estimated_price) if self.estimated_price is not None else None,
            "final_price": float(self.final_price) if self.final_price is not None else None,
            "approval_status": self.approval_status,
            "designer_completed": self.designer_completed,
            "position": self.position,
        }

    def __repr__(self):
        return f"<ProductLine {self.id}: {self.product_name[:40]}>"
