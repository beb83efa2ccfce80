# errors.py
"""Error taxonomy shared by the services and the REST layer.

Every error carries an HTTP status and a JSON-able ``detail`` so the API can
tell the caller exactly which limit or which id caused the rejection.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        payload.update(self.detail)
        return payload


class ValidationError(AppError):
    """A submitted value exceeds one of the write-time limits."""
    status_code = 400
    code = "validation_error"

    def __init__(self, limit: str, observed: Any, allowed: Any, message: Optional[str] = None,
                 violations: Optional[List[Dict[str, Any]]] = None):
        message = message or f"{limit} is {observed}, allowed {allowed}"
        violations = violations or [{"limit": limit, "observed": observed, "allowed": allowed, "message": message}]
        super().__init__(message, limit=limit, observed=observed, allowed=allowed, violations=violations)
        self.limit = limit
        self.observed = observed
        self.allowed = allowed
        self.violations = violations


class ReferentialError(AppError):
    status_code = 422
    code = "referential_error"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} '{entity_id}' does not exist", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        super().__init__(message or f"{entity} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class ExpiredError(AppError):
    status_code = 410
    code = "expired"

    def __init__(self, expires_at: datetime):
        super().__init__("Share link has expired", expires_at=expires_at.isoformat())
        self.expires_at = expires_at


class PermissionDeniedError(AppError):
    status_code = 403
    code = "permission_denied"

    def __init__(self, reason: str):
        super().__init__(reason, reason=reason)
        self.reason = reason


class StorageError(AppError):
    status_code = 502
    code = "storage_error"

    def __init__(self, operation: str, path: Optional[str], message: str):
        super().__init__(message, operation=operation, path=path)
        self.operation = operation
        self.path = path
