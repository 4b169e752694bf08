"""
Platform-wide exception hierarchy.

Every service raises one of these types. The template-center blueprint
registers one handler per type and renders a consistent JSON body
``{"error": ..., "code": ..., "details": ...}`` with the matching HTTP status.

Usage:
    from template_center.core.exceptions import NotFoundError, ForbiddenError

    raise NotFoundError(resource="Project", resource_id=42)
    raise ForbiddenError("Project does not belong to your organization")
    raise ConflictError("Gate is blocked", code="gate_blocked", details={...})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Cross-organization access is NOT reported with this type: callers that
    reach a project owned by another organization get ForbiddenError instead.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "Document").
        resource_id: The key that was looked up. Included in logs and message.
        code: Machine-readable code; defaults to ``not_found``.
        message: Optional explicit message overriding the generated one.
    """

    status = 404

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        *,
        code: str = "not_found",
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.code = code
        self.details: dict = {}
        if message is None:
            message = f"{resource}"
            if resource_id is not None:
                message += f" id={resource_id}"
            message += " not found"
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the caller may not touch the target.

    Used for cross-organization / cross-workspace access and for actors whose
    role does not permit a document transition. Maps to HTTP 403.
    """

    status = 403

    def __init__(self, message: str, *, code: str = "FORBIDDEN", details: dict | None = None) -> None:
        self.code = code
        self.details = details or {}
        super().__init__(message)


class BadRequestError(Exception):
    """Raised for malformed payloads and disallowed actions.

    Covers unknown lifecycle actions (``INVALID_ACTION``), transitions that
    are not valid from the current state (``INVALID_STATE_TRANSITION``) and
    invalid field values. Maps to HTTP 400.
    """

    status = 400

    def __init__(self, message: str, *, code: str = "BAD_REQUEST", details: dict | None = None) -> None:
        self.code = code
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when current state forbids the operation.

    Gate approvals with unmet prerequisites (``gate_blocked``) and attempts to
    overwrite an immutable document version land here. Maps to HTTP 409.

    Args:
        message: Human-readable explanation.
        code: Machine-readable code.
        details: Structured payload (e.g. ``{"gate_key": ..., "blockers": [...]}``).
    """

    status = 409

    def __init__(self, message: str, *, code: str = "CONFLICT", details: dict | None = None) -> None:
        self.code = code
        self.details = details or {}
        super().__init__(message)


class DataIntegrityError(Exception):
    """Raised when persisted data is corrupt (e.g. a template schema that is
    not a JSON object).

    Deliberately NOT a subclass of NotFoundError: a broken stored schema is a
    server-side fault and must never be rendered as an ordinary 404.
    """

    status = 500

    def __init__(self, message: str, *, code: str = "data_integrity_fault", details: dict | None = None) -> None:
        self.code = code
        self.details = details or {}
        super().__init__(message)


def error_code(exc: Exception) -> str:
    """Classify an exception for audit records."""
    return getattr(exc, "code", None) or type(exc).__name__
