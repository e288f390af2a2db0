"""
Pipeline analytics: database side.

Loads ``status_changed`` audit rows for the analysed pipeline, turns them
into ``LogEvent`` records and hands them to the pure replay functions in
``stage_analytics``. Read-only.
"""

import logging

from flask import current_app
from sqlalchemy import select

from taskhub.core.exceptions import ValidationError
from taskhub.models import db
from taskhub.models.audit import TaskAuditLog
from taskhub.models.task import ANALYTICS_STAGES, Task
from taskhub.services import stage_analytics as sa
from taskhub.services.task_service import get_active_task
from taskhub.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _pipeline_type(pipeline_type=None):
    return pipeline_type or current_app.config.get("ANALYTICS_PIPELINE_TYPE", "quotation")


def load_status_events(*, pipeline_type=None, task_ids=None, since=None) -> list[sa.LogEvent]:
    """``status_changed`` events of tasks of ``pipeline_type``.

    Soft-deleted tasks are included: their history still counts inside a
    reporting window.
    """
    stmt = (
        select(TaskAuditLog, Task.title)
        .join(Task, Task.id == TaskAuditLog.task_id)
        .where(TaskAuditLog.action == "status_changed")
    )
    if task_ids is None:
        stmt = stmt.where(Task.type == _pipeline_type(pipeline_type))
    else:
        stmt = stmt.where(TaskAuditLog.task_id.in_(list(task_ids)))
    if since is not None:
        stmt = stmt.where(TaskAuditLog.created_at >= since)

    events = []
    for log, title in db.session.execute(stmt):
        evt = sa.event_from_row(log.task_id, log.created_at, log.old_values, log.new_values,
                                title=title, log_id=log.id)
        if evt is not None:
            events.append(evt)
    return events


def _resolve_window(window):
    try:
        return sa.window_cutoff(window, utcnow())
    except ValueError as exc:
        raise ValidationError(str(exc), details={"window": f"one of {sa.WINDOWS}"}) from None


def stage_report(window="all", *, pipeline_type=None) -> dict:
    """Per-stage duration metrics for one window.

    Each task is replayed as its own partition and the samples merged.
    """
    cutoff = _resolve_window(window)
    events = load_status_events(pipeline_type=pipeline_type)
    partitions = [
        sa.collect_samples(task_events, ANALYTICS_STAGES, cutoff)
        for task_events in sa.group_by_task(events).values()
    ]
    metrics = sa.summarise(sa.merge_samples(*partitions), ANALYTICS_STAGES)
    for m in metrics:
        m["avg_display"] = sa.format_hours(m["avg_hours"])
        m["min_display"] = sa.format_hours(m["min_hours"])
        m["max_display"] = sa.format_hours(m["max_hours"])
    return {
        "window": window,
        "cutoff": cutoff.isoformat() if cutoff else None,
        "pipeline_type": _pipeline_type(pipeline_type),
        "stages": metrics,
    }


def transitions_report(limit=10, *, pipeline_type=None) -> list[dict]:
    items = sa.recent_transitions(load_status_events(pipeline_type=pipeline_type),
                                  ANALYTICS_STAGES, limit=limit)
    for t in items:
        t["hours_display"] = sa.format_hours(t["hours_spent"])
    return items


def task_history(task_id: int) -> dict:
    task = get_active_task(task_id)
    events = load_status_events(task_ids=[task.id])
    now = utcnow()
    return {
        "task_id": task.id,
        "title": task.title,
        "history": sa.stage_history(events, now),
        "current": sa.current_stage_age(events, now, initial_status=task.status,
                                        created_at=task.created_at),
    }


def activity_feed(limit=20, *, pipeline_type=None) -> list[dict]:
    return sa.current_activity(load_status_events(pipeline_type=pipeline_type), limit=limit)


def current_stage_ages(*, pipeline_type=None) -> list[dict]:
    """Age in the current stage for every live task of the pipeline, oldest first.

    Tasks without audit entries are aged from creation; tasks without a
    creation time are skipped.
    """
    now = utcnow()
    tasks = list(db.session.execute(
        select(Task).where(Task.deleted_at.is_(None), Task.type == _pipeline_type(pipeline_type))
    ).scalars())
    if not tasks:
        return []
    by_task = sa.group_by_task(load_status_events(task_ids=[t.id for t in tasks]))
    out = []
    for task in tasks:
        age = sa.current_stage_age(by_task.get(task.id, []), now,
                                   initial_status=task.status, created_at=task.created_at)
        if age is None:
            logger.warning("Task %s has no creation time; skipped from stage ages", task.id,
                           extra={"task_id": task.id})
            continue
        out.append({"task_id": task.id, "title": task.title, **age,
                    "age_display": sa.format_hours(age["age_hours"])})
    out.sort(key=lambda r: r["age_hours"], reverse=True)
    return out
