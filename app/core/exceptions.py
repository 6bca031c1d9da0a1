"""
Portal-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="TrainingProgram", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the caller's company.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model name (e.g. "Department").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        company_id: Optional scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        company_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.company_id = company_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if company_id is not None:
            msg += f" (company={company_id})"
        super().__init__(msg)


class CrossTenantError(NotFoundError):
    """Raised when the id exists but belongs to another company.

    Handled exactly like NotFoundError at the HTTP edge (404), so the
    response never confirms the record exists. Services log it as a warning.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        company_id: int | None = None,
        owner_company_id: int | None = None,
    ) -> None:
        self.owner_company_id = owner_company_id
        super().__init__(resource, resource_id, company_id)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409. Duplicate assignments never raise it; they are
    reported as already assigned.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class PermissionDeniedError(Exception):
    """Raised when the caller's role does not allow the operation. Maps to HTTP 403."""

    def __init__(self, message: str = "Permission denied", required_role: str | None = None) -> None:
        self.required_role = required_role
        super().__init__(message)
