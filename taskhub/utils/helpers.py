"""Shared parsing and time helpers used by services and blueprints."""
import logging
from datetime import date, datetime, timezone

from flask import g, request

logger = logging.getLogger(__name__)


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Normalise a datetime to aware UTC.

    SQLite hands back naive datetimes even for ``timezone=True`` columns;
    those are taken to be UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO-8601 string (``Z`` suffix allowed) to aware UTC.

    Returns None for empty or unparseable input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def current_actor_id():
    """Acting user id from the ``X-User-Id`` header, or None.

    Authentication happens upstream; this service only trusts the id the
    gateway forwards.
    """
    raw = request.headers.get("X-User-Id")
    if not raw:
        return None
    try:
        g.actor_id = int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed X-User-Id header: %r", raw)
        return None
    return g.actor_id
