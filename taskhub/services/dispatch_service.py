"""
Routing / dispatch engine.

``dispatch_to_production`` delivers a task leaving the design stage to the
estimation team, the operations team, or both.

Guarantees:
    - Nothing is written unless every precondition holds: a destination is
      selected, the estimator exists (when estimation is selected) and the
      submitted steps are valid.
    - At most one live operations twin per original task. The lookup is
      backed by a partial unique index on ``tasks.sibling_task_id``; a
      concurrent insert that loses the race is retried as an update of the
      winner's row.
    - Task, step and audit writes share one commit. Notifications go out
      afterwards and never undo it.
"""

import logging
from dataclasses import asdict, dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from taskhub.core.exceptions import ValidationError
from taskhub.models import db
from taskhub.models.audit import write_audit
from taskhub.models.auth import User
from taskhub.models.task import DesignOverlayState, Task
from taskhub.services.notification import notify_best_effort
from taskhub.services.role_service import operations_role, resolve_estimator
from taskhub.services.status_service import apply_status
from taskhub.services.task_service import get_active_task
from taskhub.services.workflow_service import parse_step_drafts, replace_steps, step_summary_lines
from taskhub.utils.errors import E
from taskhub.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DESTINATIONS = ("estimation", "operations")

_DELIVERY_FIELDS = ("delivery_address", "delivery_instructions")
_TRACKED = ("status", "assigned_to", "design_state", "admin_removed_from_production",
            "delivery_address", "delivery_instructions")


@dataclass
class DispatchResult:
    task_id: int
    destinations: list = field(default_factory=list)
    operations_task_id: int | None = None
    estimation_assignee_id: int | None = None
    twin_created: bool = False
    steps_replaced: int = 0
    notified: list = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def _selected(destinations) -> list[str]:
    if not isinstance(destinations, dict):
        return []
    return [d for d in DESTINATIONS if destinations.get(d)]


def _merge_delivery(task: Task, details: dict):
    for f in _DELIVERY_FIELDS:
        if details.get(f):
            setattr(task, f, details[f])


def _operations_assignee(details: dict):
    raw = details.get("assigned_to")
    if raw in (None, ""):
        return None
    try:
        user_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("assigned_to must be a user id", details={"assigned_to": "type"}) from None
    if db.session.get(User, user_id) is None:
        raise ValidationError(f"User {user_id} does not exist", details={"assigned_to": "unknown user"})
    return user_id


# ── Estimation ───────────────────────────────────────────────────────────────


def _route_to_estimation(task: Task, estimator: User, details: dict, *, actor_id, now):
    before = task.snapshot(*_TRACKED)
    old = apply_status(task, "production", now=now)
    task.assigned_to = estimator.id
    task.overlay = DesignOverlayState.DESIGNER_DONE
    task.admin_removed_from_production = True
    _merge_delivery(task, details)

    if old != task.status:
        write_audit(task.id, "status_changed",
                    old_values={"status": old}, new_values={"status": task.status},
                    changed_by=actor_id)
    write_audit(task.id, "assigned", old_values=before, new_values=task.snapshot(*_TRACKED),
                changed_by=actor_id)


# ── Operations twin ──────────────────────────────────────────────────────────


def find_operations_twin(original_id: int):
    """Most recently created live twin of ``original_id``, or None."""
    stmt = (
        select(Task)
        .where(Task.sibling_task_id == original_id, Task.deleted_at.is_(None))
        .order_by(Task.created_at.desc(), Task.id.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _new_twin(original: Task, assignee_id, details: dict, *, actor_id, now) -> Task:
    twin = Task(
        title=original.title,
        description=original.description,
        client_name=original.client_name,
        supplier_name=original.supplier_name,
        priority=original.priority,
        due_date=original.due_date,
        type="production",
        status="production",
        previous_status="done",
        status_changed_at=now,
        assigned_to=assignee_id,
        assigned_by=actor_id,
        created_by=actor_id,
        sibling_task_id=original.id,
    )
    twin.overlay = DesignOverlayState.DESIGNER_DONE
    _merge_delivery(twin, details)
    return twin


def _find_or_create_twin(original: Task, assignee_id, details: dict, *, actor_id, now):
    """Return ``(twin, created)``."""
    twin = find_operations_twin(original.id)
    if twin is None:
        candidate = _new_twin(original, assignee_id, details, actor_id=actor_id, now=now)
        try:
            with db.session.begin_nested():
                db.session.add(candidate)
                db.session.flush()
        except IntegrityError:
            logger.warning("Concurrent dispatch created the twin of task %s first; updating it",
                           original.id, extra={"task_id": original.id})
            twin = find_operations_twin(original.id)
            if twin is None:
                raise
        else:
            write_audit(candidate.id, "created",
                        new_values=candidate.snapshot("title", "type", "status", "assigned_to",
                                                      "sibling_task_id"),
                        changed_by=actor_id)
            return candidate, True

    before = twin.snapshot(*_TRACKED)
    if "assigned_to" in details:
        twin.assigned_to = assignee_id
    _merge_delivery(twin, details)
    after = twin.snapshot(*_TRACKED)
    if after != before:
        write_audit(twin.id, "assigned", old_values=before, new_values=after, changed_by=actor_id)
    return twin, False


# ── Entry point ──────────────────────────────────────────────────────────────


def dispatch_to_production(task_id: int, destinations: dict, *, actor_id=None,
                           operations_details: dict | None = None, policy=None) -> DispatchResult:
    """Route ``task_id`` to the selected destinations.

    Args:
        destinations: ``{"estimation": bool, "operations": bool}``.
        operations_details: optional ``assigned_to``, ``delivery_address``,
            ``delivery_instructions`` and ``steps`` (the full desired step
            list for the operations twin).
        policy: step replacement policy override (``reset`` | ``preserve``).

    Raises:
        ValidationError: no destination selected (``ERR_NO_DESTINATION``) or
            invalid operations details.
        NoEstimatorConfiguredError: estimation selected but nobody holds the role.
        NotFoundError: the task does not exist.
    """
    selected = _selected(destinations)
    if not selected:
        raise ValidationError("Select at least one destination (estimation or operations)",
                              code=E.NO_DESTINATION)
    details = operations_details or {}
    to_operations = "operations" in selected

    drafts = parse_step_drafts(details.get("steps")) if to_operations else []
    assignee_id = _operations_assignee(details) if to_operations else None
    task = get_active_task(task_id)
    estimator = resolve_estimator() if "estimation" in selected else None

    result = DispatchResult(task_id=task.id, destinations=selected)
    now = utcnow()
    twin = None
    try:
        if estimator is not None:
            _route_to_estimation(task, estimator, details, actor_id=actor_id, now=now)
            result.estimation_assignee_id = estimator.id

        if to_operations:
            twin, created = _find_or_create_twin(task, assignee_id, details, actor_id=actor_id, now=now)
            result.operations_task_id = twin.id
            result.twin_created = created
            if drafts:
                replace_steps(twin, drafts, actor_id=actor_id, policy=policy)
                result.steps_replaced = len(drafts)

        write_audit(task.id, "dispatched",
                    new_values={"destinations": selected,
                                "operations_task_id": result.operations_task_id,
                                "estimation_assignee_id": result.estimation_assignee_id},
                    changed_by=actor_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Task %s dispatched to %s (twin=%s created=%s steps=%d)",
                task.id, ",".join(selected), result.operations_task_id,
                result.twin_created, result.steps_replaced,
                extra={"task_id": task.id, "actor_id": actor_id})

    if estimator is not None and _notify_estimation(task, estimator, actor_id):
        result.notified.append("estimation")
    if twin is not None and _notify_operations(twin, drafts, actor_id):
        result.notified.append("operations")
    return result


# ── Notifications (best effort, after commit) ────────────────────────────────


def _notify_estimation(task: Task, estimator: User, actor_id) -> bool:
    notif = notify_best_effort(
        recipient_id=estimator.id,
        sender_id=actor_id,
        title=f"Ready for production: {task.title}",
        message="Design is complete and the task has moved to production.",
        priority="high",
        task_id=task.id,
    )
    return notif is not None


def _notify_operations(twin: Task, drafts, actor_id) -> bool:
    lines = [twin.title]
    if twin.client_name:
        lines.append(f"Client: {twin.client_name}")
    summary = step_summary_lines(drafts)
    if summary:
        lines.append("")
        lines.append("Steps:")
        lines.extend(summary)
    message = "\n".join(lines)

    if twin.assigned_to:
        notif = notify_best_effort(
            recipient_id=twin.assigned_to,
            sender_id=actor_id,
            title=f"📦 New Operations Task: {twin.title}",
            message=message,
            priority="urgent" if twin.priority == "urgent" else "high",
            task_id=twin.id,
        )
    else:
        notif = notify_best_effort(
            role=operations_role(),
            sender_id=actor_id,
            title="📦 New Unassigned Operations Task",
            message=message,
            priority="high",
            task_id=twin.id,
        )
    return notif is not None
