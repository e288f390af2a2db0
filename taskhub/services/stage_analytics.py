"""
Stage-duration replay over the ``status_changed`` audit trail.

Pure functions: no session, no Flask. Input is a list of ``LogEvent``
records in any order; every function groups by task and sorts internally,
so partitions (one or more tasks each) can be computed independently and
combined with ``merge_samples``.

Rules:
    - Within one task, consecutive entries ``(e[i], e[i+1])`` attribute
      ``e[i+1].at - e[i].at`` hours to the stage ``e[i].new_status``.
    - The last entry of a task is still open: it feeds "current stage age"
      but never the historical count/avg/min/max.
    - Negative deltas (clock skew) are clamped to 0 and logged.
    - A malformed row is dropped with a warning; a report never fails on
      one bad row.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from taskhub.models.task import ANALYTICS_STAGES, stage_label

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3_600_000
WINDOWS = ("today", "week", "month", "all")


@dataclass(frozen=True)
class LogEvent:
    task_id: int
    at: datetime
    old_status: str | None
    new_status: str | None
    title: str | None = None
    log_id: int | None = None


@dataclass(frozen=True)
class StageInterval:
    task_id: int
    stage: str
    entered_at: datetime
    left_at: datetime
    hours: float


# ── Row decoding ─────────────────────────────────────────────────────────────


def _payload(value):
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return None
    return value if isinstance(value, dict) else None


def _timestamp(value):
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


def event_from_row(task_id, created_at, old_values, new_values, *, title=None, log_id=None):
    """Build a LogEvent from raw audit columns, or None if the row is unusable."""
    at = _timestamp(created_at)
    if at is None:
        logger.warning("Skipping audit row %s: unparseable timestamp %r", log_id, created_at,
                       extra={"task_id": task_id})
        return None
    new = _payload(new_values)
    if new is None:
        logger.warning("Skipping audit row %s: new_values is not an object", log_id,
                       extra={"task_id": task_id})
        return None
    old = _payload(old_values) or {}
    return LogEvent(
        task_id=task_id,
        at=at,
        old_status=old.get("status"),
        new_status=new.get("status"),
        title=title,
        log_id=log_id,
    )


# ── Core replay ──────────────────────────────────────────────────────────────


def hours_between(start: datetime, end: datetime) -> float:
    """Millisecond difference in hours, never negative."""
    ms = (end - start) / timedelta(milliseconds=1)
    if ms < 0:
        logger.warning("Negative stage duration (%.0f ms) clamped to 0", ms)
        return 0.0
    return ms / MS_PER_HOUR


def _sort_key(e: LogEvent):
    return (e.at, e.log_id or 0)


def group_by_task(events) -> dict:
    """``{task_id: [events ascending]}``."""
    groups: dict[int, list] = {}
    for e in events:
        groups.setdefault(e.task_id, []).append(e)
    for items in groups.values():
        items.sort(key=_sort_key)
    return groups


def stage_intervals(task_events, stages=None) -> list[StageInterval]:
    """Completed intervals of one task; open-ended final entry excluded."""
    ordered = sorted(task_events, key=_sort_key)
    recognised = set(stages) if stages is not None else None
    out = []
    for cur, nxt in zip(ordered, ordered[1:]):
        stage = cur.new_status
        if not stage or (recognised is not None and stage not in recognised):
            continue
        out.append(StageInterval(
            task_id=cur.task_id,
            stage=stage,
            entered_at=cur.at,
            left_at=nxt.at,
            hours=hours_between(cur.at, nxt.at),
        ))
    return out


def collect_samples(events, stages=ANALYTICS_STAGES, cutoff=None) -> dict:
    """``{stage: [hours, ...]}`` for one partition of events.

    Entries older than ``cutoff`` are dropped before pairing.
    """
    samples = {s: [] for s in stages}
    kept = [e for e in events if cutoff is None or e.at >= cutoff]
    for task_events in group_by_task(kept).values():
        for iv in stage_intervals(task_events, stages):
            samples[iv.stage].append(iv.hours)
    return samples


def merge_samples(*partials) -> dict:
    merged: dict[str, list] = {}
    for part in partials:
        for stage, hours in part.items():
            merged.setdefault(stage, []).extend(hours)
    return merged


def summarise(samples: dict, stages=ANALYTICS_STAGES) -> list[dict]:
    out = []
    for stage in stages:
        hours = samples.get(stage) or []
        out.append({
            "stage": stage,
            "label": stage_label(stage),
            "count": len(hours),
            "avg_hours": sum(hours) / len(hours) if hours else 0.0,
            "min_hours": min(hours) if hours else 0.0,
            "max_hours": max(hours) if hours else 0.0,
        })
    return out


def stage_metrics(events, stages=ANALYTICS_STAGES, cutoff=None) -> list[dict]:
    """Per-stage ``{stage, label, count, avg_hours, min_hours, max_hours}``."""
    return summarise(collect_samples(events, stages, cutoff), stages)


def window_cutoff(window: str, now: datetime):
    """Start of the reporting window in UTC, or None for ``all``.

    ``today`` starts at midnight, ``week`` on Monday, ``month`` on the 1st.
    These are calendar windows, not rolling ones: "today" at 09:00 covers
    nine hours, not the last 24.
    """
    if window not in WINDOWS:
        raise ValueError(f"Unknown window {window!r}; expected one of {WINDOWS}")
    if window == "all":
        return None
    now = now.astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == "today":
        return midnight
    if window == "week":
        return midnight - timedelta(days=midnight.weekday())
    return midnight.replace(day=1)


# ── Per-task views ───────────────────────────────────────────────────────────


def stage_history(task_events, now: datetime) -> list[dict]:
    """Ordered ``(stage, entered_at, duration_hours, is_open)`` for one task.

    The final entry is open and aged against ``now``.
    """
    ordered = sorted(task_events, key=_sort_key)
    out = []
    for i, e in enumerate(ordered):
        is_open = i == len(ordered) - 1
        end = now if is_open else ordered[i + 1].at
        out.append({
            "stage": e.new_status,
            "label": stage_label(e.new_status),
            "entered_at": e.at.isoformat(),
            "duration_hours": hours_between(e.at, end),
            "is_open": is_open,
        })
    return out


def current_stage_age(task_events, now: datetime, *, initial_status=None, created_at=None):
    """``{stage, label, since, age_hours}`` or None.

    A task that never transitioned sits in its initial status since
    creation; without a creation time it is skipped.
    """
    if task_events:
        last = max(task_events, key=_sort_key)
        stage, since = last.new_status, last.at
    else:
        since = _timestamp(created_at)
        if since is None:
            return None
        stage = initial_status or "todo"
    return {
        "stage": stage,
        "label": stage_label(stage),
        "since": since.isoformat(),
        "age_hours": hours_between(since, now),
    }


def describe_transition(old_status, new_status) -> str:
    if old_status and old_status != new_status:
        return f'Moved from "{stage_label(old_status)}" to "{stage_label(new_status)}"'
    return f'Status changed to "{stage_label(new_status)}"'


def current_activity(events, limit=None) -> list[dict]:
    """Most recent entry per task, newest first."""
    latest = [max(items, key=_sort_key) for items in group_by_task(events).values()]
    latest.sort(key=_sort_key, reverse=True)
    if limit is not None:
        latest = latest[:limit]
    return [{
        "task_id": e.task_id,
        "title": e.title,
        "stage": e.new_status,
        "label": stage_label(e.new_status),
        "description": describe_transition(e.old_status, e.new_status),
        "at": e.at.isoformat(),
    } for e in latest]


def recent_transitions(events, stages=ANALYTICS_STAGES, limit=10) -> list[dict]:
    """Moves between two distinct recognised stages, newest first.

    Hours are measured from when the task last entered the from-stage; with
    no earlier entry for it the transition counts 0 hours.
    """
    recognised = set(stages)
    out = []
    for task_events in group_by_task(events).values():
        for i, e in enumerate(task_events):
            src, dst = e.old_status, e.new_status
            if not src or not dst or src == dst or src not in recognised or dst not in recognised:
                continue
            entered = e.at
            for prev in reversed(task_events[:i]):
                if prev.new_status == src:
                    entered = prev.at
                    break
            out.append({
                "task_id": e.task_id,
                "title": e.title or "Unknown Task",
                "from_stage": src,
                "to_stage": dst,
                "from_label": stage_label(src),
                "to_label": stage_label(dst),
                "hours_spent": hours_between(entered, e.at),
                "at": e.at.isoformat(),
                "_sort": _sort_key(e),
            })
    out.sort(key=lambda t: t["_sort"], reverse=True)
    for t in out:
        del t["_sort"]
    return out[:limit]


def format_hours(hours: float) -> str:
    """``45m`` under an hour, ``3.5h`` under a day, else ``2d 4h``."""
    if hours < 1:
        return f"{round(hours * 60)}m"
    if hours < 24:
        return f"{hours:.1f}h"
    days, rest = divmod(round(hours), 24)
    return f"{days}d {rest}h"
