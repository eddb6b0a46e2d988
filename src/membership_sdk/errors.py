"""Typed error taxonomy shared by the services, the CLI and the HTTP layer."""

from typing import Any, Dict, Optional


class MembershipError(Exception):
    """Base class for all membership engine errors.

    Every error carries a machine-readable ``kind`` and ``code`` so that the
    API layer can render a structured response without inspecting messages.
    """

    kind = "membership_error"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind.upper()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind, "code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class UnauthorizedError(MembershipError):
    """Caller is authenticated but lacks admin rights."""

    kind = "unauthorized"
    status_code = 403


class SessionError(MembershipError):
    """Session token is missing, expired or invalid."""

    kind = "session"
    status_code = 401


class NotFoundError(MembershipError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} not found: {resource_id}", details={"resource": resource, "id": resource_id})
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(MembershipError):
    kind = "validation"
    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(message, details={"field": field})
        self.field = field


class ProviderError(MembershipError):
    """Upstream billing provider failure."""

    kind = "provider"
    status_code = 502


class StorageError(MembershipError):
    kind = "storage"
    status_code = 500


class ConflictError(MembershipError):
    """Request conflicts with current state, e.g. an active subscription blocks deletion."""

    kind = "conflict"
    status_code = 409


class AdminError(MembershipError):
    """Operator-caused failure such as an adjustment with no changes."""

    kind = "admin"
    status_code = 400

    def __init__(self, code: str, message: str):
        super().__init__(message, code=code)


class CardError(MembershipError):
    kind = "card"
    status_code = 500
