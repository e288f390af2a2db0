"""Standardised API error responses.

Usage
-----
    from taskhub.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Task not found")
    return api_error(E.NO_DESTINATION, "Select at least one destination")
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    NO_DESTINATION = "ERR_NO_DESTINATION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / configuration – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFIGURATION = "ERR_CONFIGURATION"
    NO_ESTIMATOR = "ERR_NO_ESTIMATOR"

    # Throttling – HTTP 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NO_DESTINATION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFIGURATION: 409,
    E.NO_ESTIMATOR: 409,
    E.RATE_LIMITED: 429,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return ``(jsonify(body), http_status)`` for a standard error body.

    ``status`` falls back to the code's default, then to 400.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_service_error_handlers(bp, logger, *, fallback_message="Internal server error"):
    """Attach the service-exception → HTTP mapping to a blueprint.

    Every blueprint in the API maps the taxonomy the same way; only the
    generic 500 message differs.
    """
    from sqlalchemy.exc import IntegrityError
    from werkzeug.exceptions import HTTPException

    from taskhub.core.exceptions import (
        ConfigurationError,
        ConflictError,
        NotFoundError,
        ValidationError,
    )
    from taskhub.models import db

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @bp.errorhandler(ValidationError)
    def _handle_validation(e):
        return api_error(e.code or E.VALIDATION_INVALID, str(e), details=e.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e))

    @bp.errorhandler(ConfigurationError)
    def _handle_configuration(e):
        return api_error(e.code, str(e), status=409)

    @bp.errorhandler(IntegrityError)
    def _handle_integrity(e):
        db.session.rollback()
        logger.warning("Integrity error: %s", e.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")

    @bp.errorhandler(Exception)
    def _handle_unexpected(e):
        if isinstance(e, HTTPException):
            return e
        db.session.rollback()
        logger.exception("Unhandled error in %s: %s", bp.name, e)
        return api_error(E.INTERNAL, fallback_message)
