"""Error code registry with E-XXXX format codes.

This module defines the error code system for journalcoach, organizing
errors into categories:
- E-1xxx: Request errors
- E-2xxx: Language-model (generator) errors
- E-3xxx: External queue errors
- E-4xxx: Push delivery errors
- E-5xxx: System/internal errors

Each error includes a code, title, message template, and whether the
failing operation may be retried without user action. Job error fields
store the rendered form produced by format_code().
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    REQUEST = "request"  # E-1xxx
    GENERATOR = "generator"  # E-2xxx
    QUEUE = "queue"  # E-3xxx
    PUSH = "push"  # E-4xxx
    SYSTEM = "system"  # E-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    is_retryable: bool = False


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Request errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.REQUEST,
        title="Missing Required Field",
        message_template="Missing required fields: {fields}.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.REQUEST,
        title="Resource Not Found",
        message_template="{resource} '{identifier}' not found.",
    ),
    # Generator errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.GENERATOR,
        title="Upstream Timeout",
        message_template="The language model did not answer in time: {detail}",
        is_retryable=True,
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.GENERATOR,
        title="Upstream Rate Limited",
        message_template="The language model rejected the request (rate limit): {detail}",
        is_retryable=True,
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.GENERATOR,
        title="Upstream Error",
        message_template="The language model returned an error: {detail}",
        is_retryable=True,
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.GENERATOR,
        title="Empty Response",
        message_template="The language model returned no text content.",
        is_retryable=True,
    ),
    "E-2005": ErrorCode(
        code="E-2005",
        category=ErrorCategory.GENERATOR,
        title="Malformed Response",
        message_template="The language model response could not be parsed: {detail}",
    ),
    # Queue errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.QUEUE,
        title="Queue Not Configured",
        message_template="The external task queue is not configured.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.QUEUE,
        title="Queue Publish Failed",
        message_template="Publishing to the external task queue failed: {detail}",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.QUEUE,
        title="Callback Processing Failed",
        message_template="Background processing of the queued job failed: {detail}",
        is_retryable=True,
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.QUEUE,
        title="Invalid Callback Signature",
        message_template="Queue callback signature verification failed: {detail}",
    ),
    # Push errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.PUSH,
        title="Push Not Configured",
        message_template="Push notifications are not configured (missing VAPID keys).",
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.PUSH,
        title="Endpoint Gone",
        message_template="Push endpoint is gone (HTTP {status}); subscription removed.",
    ),
    # System errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.SYSTEM,
        title="Unexpected Error",
        message_template="Unexpected error: {detail}",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Look up an error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all error codes in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in that category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def format_code(code: str, **context: object) -> str:
    """Render an error code as "[E-XXXX] message" for storage on a job.

    Missing template placeholders are left visible rather than raising.

    Args:
        code: Error code in E-XXXX format.
        **context: Values for the message template.

    Returns:
        Rendered error string.
    """
    error_def = get_error(code)
    if error_def is None:
        return f"[{code}] Unknown error"
    try:
        message = error_def.message_template.format(**context)
    except KeyError:
        message = error_def.message_template
    return f"[{code}] {message}"
