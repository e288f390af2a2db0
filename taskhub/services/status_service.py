"""
Task status transitions and the design overlay.

There is no global automaton: each caller asserts the specific transition
it performs. Every status change records ``previous_status`` and
``status_changed_at`` and appends a ``status_changed`` audit row carrying
the raw status strings, which is what the stage analytics replay.

Design-team progress is tracked by ``Task.overlay`` and never introduces
new status values.
"""

import logging

from taskhub.core.exceptions import ValidationError
from taskhub.models import db
from taskhub.models.audit import write_audit
from taskhub.models.task import TASK_STATUSES, DesignOverlayState, ProductLine, Task
from taskhub.services.kpi_service import touch_activity_best_effort
from taskhub.services.notification import notify_best_effort
from taskhub.services.role_service import resolve_estimator
from taskhub.services.task_service import get_active_task
from taskhub.utils.helpers import utcnow

logger = logging.getLogger(__name__)

MOCKUP_CLONE_PREFIX = "[Post-Mockup] "


def apply_status(task: Task, new_status: str, *, previous_status=None, now=None) -> str:
    """Move ``task`` to ``new_status`` in memory. Returns the old status.

    ``previous_status`` overrides what is recorded as the prior stage.
    """
    now = now or utcnow()
    old = task.status
    task.previous_status = previous_status if previous_status is not None else old
    task.status = new_status
    task.status_changed_at = now
    if new_status == "done" and task.completed_at is None:
        task.completed_at = now
    return old


def _audit_status(task, old_status, *, actor_id, role=None):
    write_audit(
        task.id, "status_changed",
        old_values={"status": old_status},
        new_values={"status": task.status},
        changed_by=actor_id,
        role=role,
    )


def transition_status(task_id: int, new_status: str, *, actor_id=None, role=None,
                      expected_from=None) -> Task:
    """Caller-asserted status transition.

    Raises:
        ValidationError: unknown status, or the task is not in ``expected_from``.
    """
    if new_status not in TASK_STATUSES:
        raise ValidationError(
            f"Unknown status {new_status!r}",
            details={"status": f"must be one of {sorted(TASK_STATUSES)}"},
        )
    task = get_active_task(task_id)
    if expected_from is not None and task.status != expected_from:
        raise ValidationError(
            f"Task {task.id} is {task.status!r}, expected {expected_from!r}",
            code="ERR_CONFLICT_STATE",
        )
    if task.status == new_status:
        return task

    old = apply_status(task, new_status)
    _audit_status(task, old, actor_id=actor_id, role=role)
    db.session.commit()
    logger.info("Task %s status %s → %s", task.id, old, new_status,
                extra={"task_id": task.id, "actor_id": actor_id})
    if new_status == "done":
        touch_activity_best_effort(actor_id, tasks_completed=1)
    return task


def send_to_designer(task_id: int, *, actor_id=None) -> Task:
    """Flag the task as awaiting a mockup from the design team."""
    task = get_active_task(task_id)
    if task.overlay is DesignOverlayState.AWAITING_MOCKUP:
        return task
    old_state = task.design_state
    task.overlay = DesignOverlayState.AWAITING_MOCKUP
    write_audit(task.id, "updated",
                old_values={"design_state": old_state},
                new_values={"design_state": task.design_state},
                changed_by=actor_id)
    db.session.commit()
    logger.info("Task %s sent to designer", task.id, extra={"task_id": task.id, "actor_id": actor_id})
    return task


def return_mockup_to_estimation(task_id: int, remarks: str | None = None, *, actor_id=None) -> Task:
    """Hand a finished mockup straight back to estimation without cloning.

    The task returns to ``todo`` under the estimation user.
    """
    task = get_active_task(task_id)
    estimator = resolve_estimator()

    before = task.snapshot("status", "assigned_to", "design_state")
    old = apply_status(task, "todo")
    task.assigned_to = estimator.id
    task.overlay = DesignOverlayState.MOCKUP_RETURNED
    if remarks:
        task.admin_remarks = remarks.strip()

    _audit_status(task, old, actor_id=actor_id)
    write_audit(task.id, "assigned", old_values=before,
                new_values=task.snapshot("status", "assigned_to", "design_state"),
                changed_by=actor_id)
    db.session.commit()
    logger.info("Task %s mockup returned to estimator %s", task.id, estimator.id,
                extra={"task_id": task.id, "actor_id": actor_id})

    notify_best_effort(
        recipient_id=estimator.id,
        sender_id=actor_id,
        title=f"Mockup returned: {task.title}",
        message=remarks or "The designer sent this task back to estimation.",
        priority="high",
        task_id=task.id,
    )
    return task


def complete_mockup(task_id: int, remarks: str, *, designer_id: int) -> Task:
    """Designer finished a mockup: clone the task back to its estimator.

    The clone is a new independent ``todo`` task owned by the estimator who
    requested the mockup; the original moves to ``with_client`` and leaves
    the awaiting-mockup list. Returns the clone.

    Raises:
        ValidationError: empty remarks, or no estimator recorded on the task.
    """
    remarks = (remarks or "").strip()
    if not remarks:
        raise ValidationError("Designer remarks are required", details={"remarks": "required"})

    original = get_active_task(task_id)
    estimator_id = original.assigned_by or original.created_by
    if not estimator_id:
        raise ValidationError(
            f"Task {original.id} has no assigner or creator to return the mockup to",
        )
    now = utcnow()

    clone = Task(
        title=f"{MOCKUP_CLONE_PREFIX}{original.title}",
        description=original.description,
        client_name=original.client_name,
        supplier_name=original.supplier_name,
        priority=original.priority,
        due_date=original.due_date,
        type=original.type,
        status="todo",
        status_changed_at=now,
        created_by=estimator_id,
        assigned_to=estimator_id,
        assigned_by=designer_id,
        cloned_from_task_id=original.id,
        admin_remarks=f"Mockup completed by designer.\n\nDesigner's Notes:\n{remarks}",
    )
    clone.overlay = DesignOverlayState.NONE
    db.session.add(clone)
    # An insert failure propagates before the original is touched.
    db.session.flush()

    copied = _copy_products(original, clone)

    old = apply_status(original, "with_client", now=now)
    original.overlay = DesignOverlayState.DESIGNER_DONE
    original.completed_by_designer_id = designer_id
    original.admin_remarks = remarks

    write_audit(clone.id, "created",
                new_values={**clone.snapshot("title", "status", "assigned_to", "cloned_from_task_id"),
                            "products_copied": copied},
                changed_by=designer_id)
    if old != original.status:
        _audit_status(original, old, actor_id=designer_id)
    write_audit(original.id, "mockup_completed",
                new_values={"clone_task_id": clone.id, "design_state": original.design_state,
                            "remarks": remarks},
                changed_by=designer_id)
    db.session.commit()
    logger.info("Mockup completed on task %s, clone %s for estimator %s (%d products)",
                original.id, clone.id, estimator_id, copied,
                extra={"task_id": original.id, "actor_id": designer_id})

    notify_best_effort(
        recipient_id=estimator_id,
        sender_id=designer_id,
        title=f"Mockup completed: {original.title}",
        message=remarks,
        priority="high",
        task_id=clone.id,
    )
    return clone


def _copy_products(source: Task, target: Task) -> int:
    """Copy every product line with approval reset; failures are non-fatal."""
    try:
        with db.session.begin_nested():
            rows = source.products.order_by(ProductLine.position, ProductLine.id).all()
            for idx, p in enumerate(rows):
                db.session.add(ProductLine(
                    task_id=target.id,
                    product_name=p.product_name,
                    description=p.description,
                    quantity=p.quantity,
                    unit=p.unit,
                    supplier_name=p.supplier_name,
                    estimated_price=p.estimated_price,
                    final_price=p.final_price,
                    designer_completed=p.designer_completed,
                    approval_status="pending",
                    position=idx,
                ))
            db.session.flush()
        return len(rows)
    except Exception as exc:
        logger.warning("Product copy %s → %s failed, clone kept without products: %s",
                       source.id, target.id, exc, extra={"task_id": source.id})
        return 0
