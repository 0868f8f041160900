"""Error handling framework for journalcoach.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions mapped to HTTP status codes

Error categories:
- E-1xxx: Request errors
- E-2xxx: Language-model errors
- E-3xxx: External queue errors
- E-4xxx: Push delivery errors
- E-5xxx: System/internal errors
"""

from journalcoach.errors.domain import (
    CallbackSignatureError,
    ConflictError,
    DomainError,
    ForbiddenError,
    GeneratorFailure,
    LimitExceededError,
    NotFoundError,
    PipelineError,
    PushNotConfigured,
    QueueCallbackError,
    QueueNotConfigured,
    ValidationError,
)
from journalcoach.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    format_code,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    "format_code",
    # Domain
    "DomainError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "ValidationError",
    "LimitExceededError",
    "PipelineError",
    "GeneratorFailure",
    "QueueCallbackError",
    "QueueNotConfigured",
    "CallbackSignatureError",
    "PushNotConfigured",
]
