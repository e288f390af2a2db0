"""
Operations workflow steps and step completion.

Business logic for:
    - Step drafts:        validation of submitted step/product lists
    - Step replacement:   the full desired list replaces the current one in
                          one transaction (``reset`` or ``preserve`` policy)
    - Incremental edits:  add / remove single steps
    - Step completion:    single-winner conditional update
    - Operations board:   tab membership computed at query time
"""

import logging
from dataclasses import asdict, dataclass, field

from flask import current_app
from sqlalchemy import func, select, update

from taskhub.core.exceptions import NotFoundError, ValidationError
from taskhub.models import db
from taskhub.models.audit import write_audit
from taskhub.models.task import ProductLine, Task
from taskhub.models.workflow import (
    STEP_SHORT_LABELS,
    STEP_TYPES,
    WorkflowStep,
    parse_legacy_location_notes,
)
from taskhub.services.change_feed import record_change
from taskhub.services.kpi_service import touch_activity_best_effort
from taskhub.services.notification import notify_best_effort
from taskhub.services.task_service import get_active_task
from taskhub.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)

STEP_POLICIES = ("reset", "preserve")

BOARD_TABS = ("collect", "production", "deliver", "history")


# ═════════════════════════════════════════════════════════════════════════════
# Drafts
# ═════════════════════════════════════════════════════════════════════════════


def _as_number(value, where, name):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number", details={where: name}) from None


def _as_due_date(value, where):
    if value is None or value == "":
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"Unreadable due_date {value!r}", details={where: "due_date"})
    return parsed


@dataclass
class ProductDraft:
    product_name: str
    description: str | None = None
    quantity: float | None = None
    unit: str = "pcs"
    estimated_price: float | None = None
    final_price: float | None = None

    @classmethod
    def from_dict(cls, data: dict, where: str = "product") -> "ProductDraft":
        name = (data.get("product_name") or data.get("name") or "").strip()
        if not name:
            raise ValidationError("product_name is required", details={where: "product_name"})
        return cls(
            product_name=name,
            description=data.get("description"),
            quantity=_as_number(data.get("quantity"), where, "quantity"),
            unit=data.get("unit") or "pcs",
            estimated_price=_as_number(data.get("estimated_price"), where, "estimated_price"),
            final_price=_as_number(data.get("final_price"), where, "final_price"),
        )


@dataclass
class StepDraft:
    step_type: str
    supplier_name: str | None = None
    location_address: str | None = None
    location_notes: str | None = None
    due_date: object = None
    from_supplier_name: str | None = None
    from_location_address: str | None = None
    products: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict, where: str = "step") -> "StepDraft":
        if not isinstance(data, dict):
            raise ValidationError("Each step must be an object", details={where: "type"})
        step_type = data.get("step_type")
        if step_type not in STEP_TYPES:
            raise ValidationError(
                f"Unknown step type {step_type!r}",
                details={where: f"step_type must be one of {STEP_TYPES}"},
            )

        notes = data.get("location_notes") or None
        from_name = (data.get("from_supplier_name") or "").strip() or None
        from_addr = (data.get("from_location_address") or "").strip() or None
        if step_type == "supplier_to_supplier" and not (from_name or from_addr):
            # Older clients still send the origin as a "FROM:" line.
            legacy_name, legacy_addr, rest = parse_legacy_location_notes(notes)
            if legacy_name or legacy_addr:
                from_name, from_addr, notes = legacy_name, legacy_addr, rest

        supplier = (data.get("supplier_name") or "").strip() or None
        if step_type != "deliver_to_client" and not supplier:
            raise ValidationError("supplier_name is required for this step type",
                                  details={where: "supplier_name"})
        if step_type == "supplier_to_supplier" and not from_name:
            raise ValidationError("Transfer steps need both a source and a destination supplier",
                                  details={where: "from_supplier_name"})

        products = [
            ProductDraft.from_dict(p, where=f"{where}.products[{i}]")
            for i, p in enumerate(data.get("products") or [])
        ]
        return cls(
            step_type=step_type,
            supplier_name=supplier,
            location_address=data.get("location_address") or None,
            location_notes=notes,
            due_date=_as_due_date(data.get("due_date"), where),
            from_supplier_name=from_name,
            from_location_address=from_addr,
            products=products,
        )


def parse_step_drafts(raw_steps) -> list[StepDraft]:
    if raw_steps is None:
        return []
    if not isinstance(raw_steps, list):
        raise ValidationError("steps must be a list", details={"steps": "type"})
    return [StepDraft.from_dict(s, where=f"steps[{i}]") for i, s in enumerate(raw_steps)]


def step_summary_lines(drafts) -> list[str]:
    """``1. Collect: Acme (2 products)``; transfers read ``from → to``."""
    lines = []
    for i, d in enumerate(drafts, start=1):
        label = STEP_SHORT_LABELS.get(d.step_type, d.step_type)
        if d.step_type == "supplier_to_supplier":
            where = f"{d.from_supplier_name} → {d.supplier_name}"
        else:
            where = d.supplier_name or d.location_address or "Client"
        n = len(d.products)
        suffix = f" ({n} product{'s' if n != 1 else ''})" if n else ""
        lines.append(f"{i}. {label}: {where}{suffix}")
    return lines


# ═════════════════════════════════════════════════════════════════════════════
# Step replacement
# ═════════════════════════════════════════════════════════════════════════════


def _ordered_steps(task_id):
    stmt = select(WorkflowStep).where(WorkflowStep.task_id == task_id).order_by(WorkflowStep.step_order)
    return list(db.session.execute(stmt).scalars())


def _insert_step(task, draft: StepDraft, step_order: int) -> WorkflowStep:
    step = WorkflowStep(
        task_id=task.id,
        step_order=step_order,
        step_type=draft.step_type,
        supplier_name=draft.supplier_name,
        location_address=draft.location_address,
        location_notes=draft.location_notes,
        from_supplier_name=draft.from_supplier_name,
        from_location_address=draft.from_location_address,
        due_date=draft.due_date,
        status="pending",
    )
    db.session.add(step)
    db.session.flush()
    for idx, p in enumerate(draft.products):
        db.session.add(ProductLine(
            task_id=task.id,
            workflow_step_id=step.id,
            product_name=p.product_name,
            description=p.description,
            quantity=p.quantity,
            unit=p.unit,
            supplier_name=draft.supplier_name,
            estimated_price=p.estimated_price,
            final_price=p.final_price,
            approval_status="pending",
            position=idx,
        ))
    return step


def _summary(step: WorkflowStep) -> dict:
    return {"id": step.id, "step_order": step.step_order, "step_type": step.step_type,
            "supplier_name": step.supplier_name, "status": step.status}


def resolve_policy(policy=None) -> str:
    policy = policy or current_app.config.get("REDISPATCH_STEP_POLICY", "reset")
    if policy not in STEP_POLICIES:
        raise ValidationError(f"Unknown step policy {policy!r}",
                              details={"policy": f"must be one of {STEP_POLICIES}"})
    return policy


def replace_steps(task: Task, drafts: list[StepDraft], *, actor_id=None, policy=None) -> list[WorkflowStep]:
    """Replace the task's step list (and step-scoped products) with ``drafts``.

    ``reset`` drops every existing step. ``preserve`` keeps completed steps,
    renumbered ``0..k-1`` in their original order, and appends the drafts
    after them. Task-level products (no step) are untouched.

    Flushes only; the caller commits, so a failure anywhere leaves the
    previous step list in place.
    """
    policy = resolve_policy(policy)
    existing = _ordered_steps(task.id)
    before = [_summary(s) for s in existing]

    if policy == "preserve":
        kept = [s for s in existing if s.is_completed]
    else:
        kept = []
    kept_ids = {s.id for s in kept}

    for step in existing:
        if step.id not in kept_ids:
            db.session.delete(step)
    db.session.flush()

    # Two passes so renumbering never collides with (task_id, step_order).
    for i, step in enumerate(kept):
        step.step_order = -(i + 1)
    db.session.flush()
    for i, step in enumerate(kept):
        step.step_order = i
    db.session.flush()

    created = [_insert_step(task, d, len(kept) + i) for i, d in enumerate(drafts)]
    db.session.flush()

    steps = kept + created
    write_audit(
        task.id, "steps_replaced",
        old_values={"steps": before},
        new_values={"steps": [_summary(s) for s in steps], "policy": policy, "kept": len(kept)},
        changed_by=actor_id,
    )
    logger.info("Task %s steps replaced: %d kept, %d new (policy=%s)",
                task.id, len(kept), len(created), policy,
                extra={"task_id": task.id, "actor_id": actor_id})
    return steps


def set_task_steps(task_id: int, raw_steps, *, actor_id=None, policy=None) -> list[WorkflowStep]:
    """Validate, replace and commit. Used by the step editor endpoint."""
    drafts = parse_step_drafts(raw_steps)
    task = get_active_task(task_id)
    steps = replace_steps(task, drafts, actor_id=actor_id, policy=policy)
    db.session.commit()
    return steps


# ═════════════════════════════════════════════════════════════════════════════
# Incremental edits
# ═════════════════════════════════════════════════════════════════════════════


def add_step(task_id: int, draft: StepDraft, *, actor_id=None) -> WorkflowStep:
    task = get_active_task(task_id)
    max_order = db.session.execute(
        select(func.max(WorkflowStep.step_order)).where(WorkflowStep.task_id == task.id)
    ).scalar()
    order = 0 if max_order is None else max_order + 1
    step = _insert_step(task, draft, order)
    db.session.flush()
    write_audit(task.id, "step_added", new_values=_summary(step), changed_by=actor_id)
    db.session.commit()
    logger.info("Step %s added to task %s at #%d", step.id, task.id, order,
                extra={"task_id": task.id, "step_id": step.id})
    return step


def get_step(step_id: int) -> WorkflowStep:
    step = db.session.get(WorkflowStep, step_id)
    if step is None:
        raise NotFoundError(resource="WorkflowStep", resource_id=step_id)
    return step


def remove_step(step_id: int, *, actor_id=None) -> None:
    """Delete a pending step and its products. Completed steps are history."""
    step = get_step(step_id)
    if step.is_completed:
        raise ValidationError("Completed steps cannot be removed", code="ERR_CONFLICT_STATE")
    task_id = step.task_id
    snapshot = _summary(step)
    db.session.delete(step)
    write_audit(task_id, "step_removed", old_values=snapshot, changed_by=actor_id)
    db.session.commit()
    logger.info("Step %s removed from task %s", step_id, task_id,
                extra={"task_id": task_id, "step_id": step_id})


# ═════════════════════════════════════════════════════════════════════════════
# Step completion
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class StepCompletion:
    step_id: int
    task_id: int
    already_completed: bool
    completed_at: object = None
    completed_by: int | None = None
    at_production: bool = False

    def to_dict(self):
        d = asdict(self)
        d["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return d


def is_at_production(step) -> bool:
    """A finished supplier-to-supplier transfer means the goods sit at production."""
    return step.step_type == "supplier_to_supplier" and step.status == "completed"


def complete_step(step_id: int, actor_id=None) -> StepCompletion:
    """Mark a pending step completed. Exactly one concurrent caller wins.

    A step that is already completed is reported with
    ``already_completed=True``; nothing is written.
    """
    step = get_step(step_id)
    now = utcnow()
    result = db.session.execute(
        update(WorkflowStep)
        .where(WorkflowStep.id == step_id, WorkflowStep.status == "pending")
        .values(status="completed", completed_at=now, completed_by=actor_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        logger.info("Step %s already completed", step_id, extra={"step_id": step_id})
        return StepCompletion(
            step_id=step.id, task_id=step.task_id, already_completed=True,
            completed_at=step.completed_at, completed_by=step.completed_by,
            at_production=is_at_production(step),
        )

    db.session.refresh(step)
    record_change(db.session(), WorkflowStep.__tablename__, "update", step.to_dict(include_products=False))
    write_audit(
        step.task_id, "step_completed",
        old_values={"step_id": step.id, "status": "pending"},
        new_values={"step_id": step.id, "status": "completed", "step_type": step.step_type,
                    "at_production": is_at_production(step)},
        changed_by=actor_id,
    )
    task = db.session.get(Task, step.task_id)
    db.session.commit()
    logger.info("Step %s of task %s completed", step.id, step.task_id,
                extra={"task_id": step.task_id, "step_id": step.id, "actor_id": actor_id})
    touch_activity_best_effort(actor_id)

    if task is not None and task.assigned_to and task.assigned_to != actor_id:
        notify_best_effort(
            recipient_id=task.assigned_to,
            sender_id=actor_id,
            title=f"Step completed: {step.short_label}",
            message=f"Step {step.step_order + 1} of \"{task.title}\" was completed.",
            task_id=task.id,
        )
    return StepCompletion(
        step_id=step.id, task_id=step.task_id, already_completed=False,
        completed_at=step.completed_at, completed_by=step.completed_by,
        at_production=is_at_production(step),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Read side
# ═════════════════════════════════════════════════════════════════════════════


def list_steps(task_id: int) -> list[WorkflowStep]:
    get_active_task(task_id)
    return _ordered_steps(task_id)


def task_progress(task_id: int) -> dict:
    steps = list_steps(task_id)
    total = len(steps)
    completed = sum(1 for s in steps if s.is_completed)
    return {
        "task_id": task_id,
        "completed": completed,
        "total": total,
        "percent": round(completed / total * 100) if total else 0,
    }


def board_tabs_for(steps) -> set[str]:
    """Which operations-board tabs a task with ``steps`` appears on."""
    tabs = set()
    for s in steps:
        pending = s.status == "pending"
        if pending and s.step_type in ("collect", "supplier_to_supplier"):
            tabs.add("collect")
        if (pending and s.step_type == "deliver_to_supplier") or is_at_production(s):
            tabs.add("production")
        if pending and s.step_type == "deliver_to_client":
            tabs.add("deliver")
        if s.status == "completed":
            tabs.add("history")
    return tabs


def operations_board(assigned_to=None) -> dict:
    """Group live production tasks with steps into the operations tabs."""
    q = select(Task).where(Task.deleted_at.is_(None), Task.status == "production")
    if assigned_to is not None:
        q = q.where(Task.assigned_to == assigned_to)
    tasks = list(db.session.execute(q.order_by(Task.due_date, Task.id)).scalars())

    steps_by_task: dict[int, list] = {}
    if tasks:
        rows = db.session.execute(
            select(WorkflowStep)
            .where(WorkflowStep.task_id.in_([t.id for t in tasks]))
            .order_by(WorkflowStep.task_id, WorkflowStep.step_order)
        ).scalars()
        for s in rows:
            steps_by_task.setdefault(s.task_id, []).append(s)

    board = {tab: [] for tab in BOARD_TABS}
    for task in tasks:
        steps = steps_by_task.get(task.id)
        if not steps:
            continue
        entry = {
            **task.to_dict(),
            "steps": [s.to_dict() for s in steps],
            "progress": {
                "completed": sum(1 for s in steps if s.is_completed),
                "total": len(steps),
            },
        }
        for tab in board_tabs_for(steps):
            board[tab].append(entry)

    return {"tabs": board, "counts": {tab: len(items) for tab, items in board.items()}}
