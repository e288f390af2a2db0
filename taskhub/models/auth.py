"""
Task Pipeline Hub
User and role storage read by the routing engine.

Models:
    - User:     a team member who can own, create or complete work.
    - UserRole: one row per (user, role) grant.

Authentication and role administration live outside this service; the core
only reads these tables to resolve assignees ("who holds the estimation
role?") and to stamp the actor's role onto audit entries.
"""

from datetime import datetime, timezone

from taskhub.models import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def display_name(self):
        return self.full_name or self.email

    @property
    def role_names(self):
        return [ur.role for ur in self.roles.order_by(UserRole.id).all()]

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_roles:
            d["roles"] = self.role_names
        return d

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_user_role"),
        db.Index("ix_user_roles_role", "role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role = db.Column(db.String(30), nullable=False, comment="estimation | designer | operations | …")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = db.relationship("User", back_populates="roles")

    def __repr__(self):
        return f"<UserRole user={self.user_id} role={self.role}>"
