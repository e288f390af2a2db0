"""
Task records: CRUD and lookups.

Business logic for:
    - Creating tasks through the generic create path
    - Active (non-deleted) lookups used by every other service
    - Soft deletion
"""

import logging

from sqlalchemy import select

from taskhub.core.exceptions import NotFoundError, ValidationError
from taskhub.models import db
from taskhub.models.audit import write_audit
from taskhub.models.task import TASK_PRIORITIES, TASK_STATUSES, TASK_TYPES, ProductLine, Task
from taskhub.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)

_CREATE_FIELDS = ("description", "client_name", "supplier_name", "delivery_address",
                  "delivery_instructions", "admin_remarks")


def get_active_task(task_id: int) -> Task:
    """Return the non-deleted task or raise NotFoundError."""
    stmt = select(Task).where(Task.id == task_id, Task.deleted_at.is_(None))
    task = db.session.execute(stmt).scalar_one_or_none()
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


def create_task(data: dict, *, actor_id: int | None = None) -> Task:
    """Create a task (and optional unscoped product lines) and commit."""
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})

    status = data.get("status", "todo")
    task_type = data.get("type", "general")
    priority = data.get("priority", "medium")
    errors = {}
    if status not in TASK_STATUSES:
        errors["status"] = f"must be one of {sorted(TASK_STATUSES)}"
    if task_type not in TASK_TYPES:
        errors["type"] = f"must be one of {sorted(TASK_TYPES)}"
    if priority not in TASK_PRIORITIES:
        errors["priority"] = f"must be one of {sorted(TASK_PRIORITIES)}"
    if errors:
        raise ValidationError("Invalid task fields", details=errors)

    task = Task(
        title=title,
        status=status,
        type=task_type,
        priority=priority,
        due_date=parse_datetime(data.get("due_date")),
        assigned_to=data.get("assigned_to"),
        assigned_by=data.get("assigned_by", actor_id),
        created_by=data.get("created_by", actor_id),
        status_changed_at=utcnow(),
    )
    for f in _CREATE_FIELDS:
        if f in data:
            setattr(task, f, data[f])
    db.session.add(task)
    db.session.flush()

    for idx, p in enumerate(data.get("products") or []):
        name = (p.get("product_name") or "").strip()
        if not name:
            raise ValidationError("product_name is required", details={f"products[{idx}]": "product_name"})
        db.session.add(ProductLine(
            task_id=task.id,
            product_name=name,
            description=p.get("description"),
            quantity=p.get("quantity"),
            unit=p.get("unit") or "pcs",
            supplier_name=p.get("supplier_name"),
            estimated_price=p.get("estimated_price"),
            final_price=p.get("final_price"),
            approval_status=p.get("approval_status", "pending"),
            position=idx,
        ))

    write_audit(task.id, "created", new_values=task.snapshot("title", "status", "type", "assigned_to"),
                changed_by=actor_id)
    db.session.commit()
    logger.info("Task created id=%s type=%s status=%s", task.id, task.type, task.status,
                extra={"task_id": task.id, "actor_id": actor_id})
    return task


def soft_delete_task(task_id: int, *, actor_id: int | None = None) -> Task:
    task = get_active_task(task_id)
    task.soft_delete()
    write_audit(task.id, "deleted", old_values={"deleted_at": None},
                new_values={"deleted_at": task.deleted_at.isoformat()}, changed_by=actor_id)
    db.session.commit()
    logger.info("Task soft-deleted id=%s", task.id, extra={"task_id": task.id, "actor_id": actor_id})
    return task


def list_tasks(*, status=None, task_type=None, assigned_to=None, limit=100, offset=0):
    q = Task.query_active()
    if status:
        q = q.filter(Task.status == status)
    if task_type:
        q = q.filter(Task.type == task_type)
    if assigned_to is not None:
        q = q.filter(Task.assigned_to == assigned_to)
    total = q.count()
    items = q.order_by(Task.created_at.desc(), Task.id.desc()).offset(offset).limit(limit).all()
    return items, total
