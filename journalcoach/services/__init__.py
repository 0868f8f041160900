"""Services for the journalcoach reply pipeline."""

from journalcoach.services.claimer import ClaimPassResult, PendingWorkClaimer
from journalcoach.services.generator import (
    FALLBACK_REPLY,
    STREAM_FALLBACK_REPLY,
    BufferedJobWriter,
    EventMessage,
    PreparedPrompt,
    ResponseGenerator,
    ToolResult,
    prepare_prompt,
)
from journalcoach.services.job_runner import ChatJobRunner, ToolJobService
from journalcoach.services.job_service import (
    VALID_TRANSITIONS,
    InvalidStateTransition,
    JobService,
)
from journalcoach.services.message_store import MessageStore, SubmittedTurn
from journalcoach.services.notification_scheduler import NotificationScheduler
from journalcoach.services.push_dispatcher import PushDispatcher, SubscriptionService
from journalcoach.services.queue_client import CallbackVerifier, QStashQueue

__all__ = [
    "MessageStore",
    "SubmittedTurn",
    "JobService",
    "InvalidStateTransition",
    "VALID_TRANSITIONS",
    "ResponseGenerator",
    "PreparedPrompt",
    "BufferedJobWriter",
    "EventMessage",
    "ToolResult",
    "FALLBACK_REPLY",
    "STREAM_FALLBACK_REPLY",
    "prepare_prompt",
    "PendingWorkClaimer",
    "ClaimPassResult",
    "NotificationScheduler",
    "PushDispatcher",
    "SubscriptionService",
    "QStashQueue",
    "CallbackVerifier",
    "ChatJobRunner",
    "ToolJobService",
]
