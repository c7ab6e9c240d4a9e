"""Domain Errors

Every error carries a stable ``code`` and a ``details`` dict so callers can
render a user-facing message without parsing the text.
"""
from typing import Any, Dict


class DomainError(Exception):
    """Base class for all reservation and key custody failures"""

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(DomainError):
    """Malformed or out-of-policy input"""

    code = "VALIDATION_ERROR"


class ConflictError(DomainError):
    """Overlapping booking, duplicate key code or already-held key"""

    code = "CONFLICT"


class QuotaError(DomainError):
    """Per-user daily limit reached"""

    code = "QUOTA_EXCEEDED"


class StateError(DomainError):
    """Operation not allowed in the entity's current state"""

    code = "INVALID_STATE"


class NotFoundError(DomainError):
    code = "NOT_FOUND"


class PermissionDeniedError(DomainError):
    code = "PERMISSION_DENIED"
