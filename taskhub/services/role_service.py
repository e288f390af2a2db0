"""
Role lookups used for routing.

Role grants are administered elsewhere; this module only answers
"who holds role X?" against the ``user_roles`` table.
"""

import logging

from flask import current_app
from sqlalchemy import select

from taskhub.core.exceptions import NoEstimatorConfiguredError
from taskhub.models import db
from taskhub.models.auth import User, UserRole

logger = logging.getLogger(__name__)


def users_with_role(role: str) -> list[User]:
    """Active users holding ``role``, in grant order."""
    stmt = (
        select(User)
        .join(UserRole, UserRole.user_id == User.id)
        .where(UserRole.role == role, User.is_active.is_(True))
        .order_by(UserRole.id)
    )
    return list(db.session.execute(stmt).scalars())


def user_ids_with_role(role: str) -> list[int]:
    return [u.id for u in users_with_role(role)]


def resolve_estimator() -> User:
    """Return the user that estimation work is routed to.

    The earliest active grant of the configured estimation role wins.

    Raises:
        NoEstimatorConfiguredError: nobody holds the role.
    """
    role = current_app.config.get("ESTIMATION_ROLE", "estimation")
    users = users_with_role(role)
    if not users:
        logger.warning("No active user holds role %r", role)
        raise NoEstimatorConfiguredError(role)
    return users[0]


def operations_role() -> str:
    return current_app.config.get("OPERATIONS_ROLE", "operations")


def roles_of(user_id: int) -> list[str]:
    stmt = select(UserRole.role).where(UserRole.user_id == user_id).order_by(UserRole.id)
    return list(db.session.execute(stmt).scalars())
