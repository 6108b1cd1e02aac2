"""Domain contracts and shared types."""

from backend.app.domain.contracts import (  # noqa: F401
    SignalFieldsContract,
)
from backend.app.domain.errors import (  # noqa: F401
    Conflict,
    DomainError,
    ExternalServiceError,
    NotFound,
    QuotaExceeded,
    ValidationError,
)
