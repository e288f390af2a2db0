"""
Task Pipeline Hub
Activity streak and achievement storage.

Models:
    - UserActivityStreak: one row per user, consecutive-day activity counters.
    - UserAchievement:    one row per earned badge; rows are never removed.
"""

from datetime import datetime, timezone

from taskhub.models import db


class UserActivityStreak(db.Model):
    __tablename__ = "user_activity_streaks"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    current_streak = db.Column(db.Integer, nullable=False, default=0)
    longest_streak = db.Column(db.Integer, nullable=False, default=0)
    last_activity_date = db.Column(db.Date, nullable=True)
    total_tasks_completed = db.Column(db.Integer, nullable=False, default=0)
    efficiency_score = db.Column(db.Float, nullable=False, default=0.0)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_activity_date": self.last_activity_date.isoformat() if self.last_activity_date else None,
            "total_tasks_completed": self.total_tasks_completed,
            "efficiency_score": self.efficiency_score,
        }

    def __repr__(self):
        return f"<UserActivityStreak user={self.user_id} current={self.current_streak}>"


class UserAchievement(db.Model):
    __tablename__ = "user_achievements"
    __table_args__ = (
        db.UniqueConstraint("user_id", "achievement_type", name="uq_user_achievement"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    achievement_type = db.Column(db.String(40), nullable=False)
    earned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "achievement_type": self.achievement_type,
            "earned_at": self.earned_at.isoformat() if self.earned_at else None,
        }

    def __repr__(self):
        return f"<UserAchievement user={self.user_id} {self.achievement_type}>"
