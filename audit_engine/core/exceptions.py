"""
Engine-wide exception hierarchy.

Services raise these canonical types; blueprints register handlers against
them once and get consistent HTTP status codes everywhere.

Inference failures and malformed model output are deliberately absent: they
are absorbed inside the AI layer and replaced with documented defaults, so
they never reach a caller.

Usage:
    from audit_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="AuditTask", resource_id=task_id)
    raise ValidationError("title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-organization access
    attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "AuditTask").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        organization_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        organization_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a business rule (unknown enum value,
    missing title, empty approval chain).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvariantViolationError(Exception):
    """Raised when an operation would break a structural invariant.

    Examples: resolving an approval level out of order or twice, submitting
    a proposal that is not a draft, losing a compare-and-set race on a
    proposal's current approval level. Rejected, never coerced.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, *, resource: str | None = None,
                 resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message)


class TransitionError(InvariantViolationError):
    """Raised when a lifecycle action is not valid from the current status."""

    def __init__(self, resource: str, resource_id: str | None, action: str,
                 current: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' {resource} {resource_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, resource=resource, resource_id=resource_id)
        self.action = action
        self.current_status = current
        self.reason = reason
