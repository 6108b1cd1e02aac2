from __future__ import annotations

from typing import Any, Dict, Optional


class DomainError(Exception):
    """
    Base for failures surfaced to callers of the engine.

    `status_code` is the HTTP status the API layer answers with; services never
    import FastAPI for these.
    """

    status_code = 400
    error = "domain_error"

    def __init__(self, detail: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "detail": self.detail}
        if self.context:
            payload["context"] = self.context
        return payload


class ValidationError(DomainError):
    status_code = 422
    error = "validation_error"


class NotFound(DomainError):
    status_code = 404
    error = "not_found"


class Conflict(DomainError):
    status_code = 409
    error = "conflict"


class QuotaExceeded(DomainError):
    status_code = 409
    error = "quota_exceeded"


class ExternalServiceError(DomainError):
    status_code = 502
    error = "external_service_error"


class LedgerIntegrityError(ValueError):
    pass
