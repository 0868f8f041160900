"""Typed domain exceptions for API error mapping.

These exceptions provide stronger API contract guarantees than
string-based error message matching. The FastAPI app maps each type to
an HTTP status code in one exception handler; cron and queue paths catch
the pipeline errors and record them instead of surfacing them.

Usage:
    # In service layer
    raise NotFoundError("Conversation", conversation_id)

    # In route handler (or the app-wide handler)
    try:
        conversation = store.get_conversation(user_id, conversation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""

from journalcoach.errors.registry import format_code


class DomainError(Exception):
    """Base exception for all domain errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    status_code = 404

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ForbiddenError(DomainError):
    """Resource belongs to another user. Maps to HTTP 403."""

    status_code = 403


class ConflictError(DomainError):
    """Resource conflict (e.g., endpoint owned by someone else). Maps to HTTP 409."""

    status_code = 409


class ValidationError(DomainError):
    """Validation failure. Maps to HTTP 400."""

    status_code = 400


class LimitExceededError(DomainError):
    """Per-user limit reached. Maps to HTTP 429."""

    status_code = 429


# Pipeline errors


class PipelineError(DomainError):
    """Error carrying an E-XXXX registry code."""

    def __init__(self, code: str, **context: object) -> None:
        self.code = code
        self.context = context
        super().__init__(format_code(code, **context))


class GeneratorFailure(PipelineError):
    """Upstream language-model failure (timeout, rate limit, error, bad output).

    Recovered locally on the chat-reply path by substituting a fixed
    apology; recorded as a job error on the job paths.
    """

    status_code = 502


class QueueCallbackError(PipelineError):
    """Background processing of an externally queued job failed."""

    status_code = 500


class QueueNotConfigured(PipelineError):
    """The external task queue has no token configured. Maps to HTTP 503."""

    status_code = 503

    def __init__(self) -> None:
        super().__init__("E-3001")


class CallbackSignatureError(PipelineError):
    """A queue callback failed signature verification. Maps to HTTP 401."""

    status_code = 401

    def __init__(self, detail: str) -> None:
        super().__init__("E-3004", detail=detail)


class PushNotConfigured(PipelineError):
    """The push dispatcher was built without VAPID keys."""

    status_code = 503

    def __init__(self) -> None:
        super().__init__("E-4001")
