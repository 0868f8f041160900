"""Database module for journalcoach state management and persistence."""

from journalcoach.db.connection import (
    SessionLocal,
    build_engine,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from journalcoach.db.models import (
    AgendaItem,
    Conversation,
    EventNotification,
    Job,
    JobKind,
    JobStatus,
    JournalEntry,
    Message,
    MessageRole,
    MessageStatus,
    PushSubscription,
    SentNotification,
    TimeOfDay,
)

__all__ = [
    # Models
    "Conversation",
    "Message",
    "Job",
    "PushSubscription",
    "SentNotification",
    "AgendaItem",
    "EventNotification",
    "JournalEntry",
    # Enums
    "MessageRole",
    "MessageStatus",
    "JobStatus",
    "JobKind",
    "TimeOfDay",
    # Connection
    "engine",
    "build_engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
