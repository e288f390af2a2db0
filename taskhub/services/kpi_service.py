"""
Per-user KPIs, activity streaks, badges and leaderboards.

KPIs are counted from tasks the user owns or created, the user's own audit
rows and the workflow steps they completed. Badges are plain threshold
comparisons over those counts; a badge recorded in ``user_achievements``
stays earned regardless of current progress.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from taskhub.core.exceptions import NotFoundError, ValidationError
from taskhub.models import db
from taskhub.models.audit import TaskAuditLog
from taskhub.models.auth import User
from taskhub.models.gamification import UserAchievement, UserActivityStreak
from taskhub.models.task import Task
from taskhub.models.workflow import WorkflowStep
from taskhub.services.role_service import users_with_role
from taskhub.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

PERIODS = ("today", "week", "month", "all")
_ALL_TIME_START = datetime(2020, 1, 1, tzinfo=timezone.utc)

QUOTATION_APPROVED_STATUSES = {"approved", "production"}

BADGE_DEFINITIONS = [
    {"id": "quick_starter", "name": "Quick Starter", "icon": "⚡", "target": 5,
     "metric": "tasks_completed", "description": "Complete 5 tasks in a single day"},
    {"id": "quotation_master", "name": "Quotation Master", "icon": "📊", "target": 10,
     "metric": "quotations_sent", "description": "Send 10 quotations in a day"},
    {"id": "mockup_wizard", "name": "Mockup Wizard", "icon": "🎨", "target": 5,
     "metric": "mockups_completed", "description": "Complete 5 mockups in a day"},
    {"id": "production_hero", "name": "Production Hero", "icon": "🏭", "target": 10,
     "metric": "production_tasks_completed", "description": "Complete 10 production tasks in a week"},
    {"id": "streak_5", "name": "5-Day Streak", "icon": "🔥", "target": 5,
     "metric": "current_streak", "description": "Active for 5 consecutive days"},
    {"id": "streak_10", "name": "10-Day Streak", "icon": "🔥🔥", "target": 10,
     "metric": "current_streak", "description": "Active for 10 consecutive days"},
    {"id": "streak_30", "name": "Monthly Champion", "icon": "👑", "target": 30,
     "metric": "current_streak", "description": "Active for 30 consecutive days"},
    {"id": "perfect_approval", "name": "Perfect Approval", "icon": "✅", "target": 100,
     "metric": "approval_rate", "description": "100% approval rate on quotations (min 5)"},
    {"id": "speed_demon", "name": "Speed Demon", "icon": "🚀", "target": 2,
     "metric": "avg_completion_hours", "description": "Average task completion under 2 hours"},
]

KPI_METRICS = (
    "tasks_completed", "tasks_created", "status_changes", "avg_completion_hours",
    "rfqs_received", "quotations_sent", "quotations_approved", "quotations_rejected",
    "avg_quotation_hours", "mockups_completed", "mockups_sent_to_client",
    "production_files_created", "production_tasks_completed", "deliveries_made",
    "steps_completed",
)

PERFECT_APPROVAL_MIN_DECIDED = 5
SPEED_DEMON_MIN_COMPLETED = 5


# ── Periods ──────────────────────────────────────────────────────────────────


def date_range(period: str, now: datetime | None = None):
    """Half-open ``[start, end)`` in UTC. Weeks start on Monday."""
    if period not in PERIODS:
        raise ValidationError(f"Unknown period {period!r}", details={"period": f"one of {PERIODS}"})
    now = as_utc(now or utcnow())
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    end_of_today = midnight + timedelta(days=1)
    if period == "today":
        return midnight, end_of_today
    if period == "week":
        start = midnight - timedelta(days=midnight.weekday())
        return start, start + timedelta(days=7)
    if period == "month":
        start = midnight.replace(day=1)
        nxt = (start + timedelta(days=32)).replace(day=1)
        return start, nxt
    return _ALL_TIME_START, end_of_today


def _within(value, start, end):
    value = as_utc(value)
    return value is not None and start <= value < end


def _avg_hours(tasks):
    hours = [
        (as_utc(t.completed_at) - as_utc(t.created_at)).total_seconds() / 3600
        for t in tasks if t.created_at and t.completed_at
    ]
    return round(sum(hours) / len(hours), 1) if hours else 0.0


# ── KPIs ─────────────────────────────────────────────────────────────────────


def compute_user_kpis(user_id: int, period: str = "today", now: datetime | None = None) -> dict:
    start, end = date_range(period, now)

    owned = list(db.session.execute(
        select(Task).where(
            Task.deleted_at.is_(None),
            or_(Task.assigned_to == user_id, Task.created_by == user_id),
        )
    ).scalars())
    period_tasks = [t for t in owned if _within(t.created_at, start, end)]
    completed = [t for t in owned if _within(t.completed_at, start, end)]

    logs = list(db.session.execute(
        select(TaskAuditLog).where(
            TaskAuditLog.changed_by == user_id,
            TaskAuditLog.created_at >= start,
            TaskAuditLog.created_at < end,
        )
    ).scalars())

    steps = list(db.session.execute(
        select(WorkflowStep).where(
            WorkflowStep.completed_by == user_id,
            WorkflowStep.status == "completed",
            WorkflowStep.completed_at >= start,
            WorkflowStep.completed_at < end,
        )
    ).scalars())

    designed = list(db.session.execute(
        select(Task).where(Task.deleted_at.is_(None), Task.completed_by_designer_id == user_id)
    ).scalars())

    quotations = [t for t in period_tasks if t.type == "quotation"]
    return {
        "user_id": user_id,
        "period": period,
        "tasks_completed": len(completed),
        "tasks_created": sum(1 for t in period_tasks if t.created_by == user_id),
        "status_changes": sum(1 for log in logs if log.action == "status_changed"),
        "avg_completion_hours": _avg_hours(completed),
        "rfqs_received": len(quotations),
        "quotations_sent": sum(1 for t in completed if t.type == "quotation"),
        "quotations_approved": sum(1 for t in quotations if t.status in QUOTATION_APPROVED_STATUSES),
        "quotations_rejected": sum(1 for t in quotations if t.status == "rejected"),
        "avg_quotation_hours": _avg_hours([t for t in completed if t.type == "quotation"]),
        "mockups_completed": sum(1 for log in logs if log.action == "mockup_completed"),
        "mockups_sent_to_client": sum(1 for t in designed if t.status == "with_client"),
        "production_files_created": sum(1 for t in period_tasks if t.came_from_designer_done),
        "production_tasks_completed": sum(
            1 for t in completed if t.came_from_designer_done or t.status == "done"
        ),
        "deliveries_made": sum(1 for s in steps if s.step_type == "deliver_to_client"),
        "steps_completed": len(steps),
    }


# ── Streaks ──────────────────────────────────────────────────────────────────


def record_activity(user_id: int, day=None, *, tasks_completed: int = 0) -> UserActivityStreak:
    """Count ``day`` as active for the user and commit.

    Next consecutive day extends the streak, the same day leaves it alone,
    a gap restarts it at 1. Days older than the last recorded one are
    ignored for the streak.
    """
    day = day or utcnow().date()
    streak = db.session.execute(
        select(UserActivityStreak).where(UserActivityStreak.user_id == user_id)
    ).scalar_one_or_none()
    if streak is None:
        streak = UserActivityStreak(user_id=user_id, current_streak=0, longest_streak=0,
                                    total_tasks_completed=0, efficiency_score=0.0)
        db.session.add(streak)

    last = streak.last_activity_date
    if last is None or day > last:
        if last is not None and day - last == timedelta(days=1):
            streak.current_streak = (streak.current_streak or 0) + 1
        else:
            streak.current_streak = 1
        streak.last_activity_date = day
    streak.longest_streak = max(streak.longest_streak or 0, streak.current_streak or 0)
    streak.total_tasks_completed = (streak.total_tasks_completed or 0) + tasks_completed
    db.session.commit()
    return streak


def get_streak(user_id: int):
    return db.session.execute(
        select(UserActivityStreak).where(UserActivityStreak.user_id == user_id)
    ).scalar_one_or_none()


# ── Badges ───────────────────────────────────────────────────────────────────


def _badge_progress(badge, kpis, current_streak):
    metric = badge["metric"]
    if metric == "current_streak":
        return current_streak, current_streak >= badge["target"]
    if metric == "approval_rate":
        decided = kpis["quotations_approved"] + kpis["quotations_rejected"]
        rate = round(kpis["quotations_approved"] / decided * 100) if decided else 0
        return rate, rate >= badge["target"] and decided >= PERFECT_APPROVAL_MIN_DECIDED
    if metric == "avg_completion_hours":
        avg = kpis["avg_completion_hours"]
        ok = 0 < avg <= badge["target"] and kpis["tasks_completed"] >= SPEED_DEMON_MIN_COMPLETED
        return avg, ok
    progress = kpis.get(metric, 0)
    return progress, progress >= badge["target"]


def evaluate_badges(kpis: dict, current_streak: int = 0, achievements=None) -> list[dict]:
    """Every badge with its progress; ``earned`` if recorded or reached now.

    ``achievements`` maps achievement_type to earned_at (or is any iterable
    of achievement types).
    """
    if achievements is None:
        achievements = {}
    elif not isinstance(achievements, dict):
        achievements = {a: None for a in achievements}
    out = []
    for badge in BADGE_DEFINITIONS:
        progress, reached = _badge_progress(badge, kpis, current_streak or 0)
        recorded = badge["id"] in achievements
        earned_at = achievements.get(badge["id"])
        out.append({
            **{k: v for k, v in badge.items() if k != "metric"},
            "progress": progress,
            "earned": recorded or reached,
            "recorded": recorded,
            "earned_at": earned_at.isoformat() if isinstance(earned_at, datetime) else earned_at,
        })
    return out


def _achievements(user_id):
    rows = db.session.execute(
        select(UserAchievement).where(UserAchievement.user_id == user_id)
    ).scalars()
    return {a.achievement_type: a.earned_at for a in rows}


def award_badges(user_id: int, badges: list[dict]) -> list[str]:
    """Persist earned badges that are not recorded yet. Returns new ids."""
    existing = _achievements(user_id)
    awarded = []
    for badge in badges:
        if not badge["earned"] or badge["id"] in existing:
            continue
        try:
            with db.session.begin_nested():
                db.session.add(UserAchievement(user_id=user_id, achievement_type=badge["id"]))
                db.session.flush()
            awarded.append(badge["id"])
        except IntegrityError:
            # Recorded concurrently; it is earned either way.
            logger.info("Badge %s for user %s already recorded", badge["id"], user_id)
    db.session.commit()
    if awarded:
        logger.info("User %s earned badges: %s", user_id, ", ".join(awarded),
                    extra={"actor_id": user_id})
    return awarded


def touch_activity_best_effort(user_id, *, tasks_completed=0):
    """Record today's activity and award today's badges; failures are logged."""
    if user_id is None:
        return
    try:
        streak = record_activity(user_id, tasks_completed=tasks_completed)
        kpis = compute_user_kpis(user_id, "today")
        award_badges(user_id, evaluate_badges(kpis, streak.current_streak, _achievements(user_id)))
    except Exception as exc:
        db.session.rollback()
        logger.warning("Activity tracking failed for user %s: %s", user_id, exc,
                       extra={"actor_id": user_id})


# ── Read models ──────────────────────────────────────────────────────────────


def user_scorecard(user_id: int, period: str = "today") -> dict:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    kpis = compute_user_kpis(user_id, period)
    streak = get_streak(user_id)
    current = streak.current_streak if streak else 0
    return {
        "user": user.to_dict(include_roles=True),
        "kpis": kpis,
        "badges": evaluate_badges(kpis, current, _achievements(user_id)),
        "streak": streak.to_dict() if streak else {
            "user_id": user_id, "current_streak": 0, "longest_streak": 0,
            "last_activity_date": None, "total_tasks_completed": 0, "efficiency_score": 0.0,
        },
    }


def leaderboard(role: str, period: str = "week", metric: str = "tasks_completed", limit: int = 10) -> list[dict]:
    """Users of ``role`` ranked by one KPI, ties broken by user id."""
    if metric not in KPI_METRICS:
        raise ValidationError(f"Unknown metric {metric!r}", details={"metric": f"one of {KPI_METRICS}"})
    rows = []
    for user in users_with_role(role):
        kpis = compute_user_kpis(user.id, period)
        rows.append({"user_id": user.id, "name": user.display_name, "value": kpis[metric]})
    rows.sort(key=lambda r: (-r["value"], r["user_id"]))
    for rank, row in enumerate(rows[:limit], start=1):
        row["rank"] = rank
    return rows[:limit]
