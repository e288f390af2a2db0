"""
Service-layer exception hierarchy.

Services raise these types and never return HTTP responses. Blueprints
register one handler per type and get consistent status codes:

    NotFoundError       -> 404
    ValidationError     -> 422
    ConflictError       -> 409
    ConfigurationError  -> 409

Usage:
    from taskhub.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Task", resource_id=42)
    raise ValidationError("Select at least one destination", code="ERR_NO_DESTINATION")
"""


class NotFoundError(Exception):
    """Raised when a requested task, step or user does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Task", "WorkflowStep").
        resource_id: The PK that was looked up. Logged, not returned to clients.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
        code: Optional machine code overriding the default validation code.
    """

    def __init__(self, message: str, details: dict | None = None, code: str | None = None) -> None:
        self.details = details or {}
        self.code = code
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write collides with a unique constraint and retrying will not help.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class ConfigurationError(Exception):
    """Raised when the system is missing configuration an operation depends on."""

    code = "ERR_CONFIGURATION"


class NoEstimatorConfiguredError(ConfigurationError):
    """No active user holds the estimation role, so work cannot be routed back."""

    code = "ERR_NO_ESTIMATOR"

    def __init__(self, role: str = "estimation") -> None:
        self.role = role
        super().__init__(f"No estimation user found (role={role!r})")
