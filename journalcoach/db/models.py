"""SQLAlchemy ORM models for the journalcoach state database.

This module defines the persisted state of the AI-reply pipeline:
conversations and their messages, background jobs, push subscriptions,
the sent-notification audit log, and the agenda/event-notification rows
the event scheduler reads. Uses SQLAlchemy 2.0 style with Mapped and
mapped_column.

Timestamps are stored as ISO8601 UTC strings with fixed microsecond
precision so that lexical comparison in SQL matches chronological order.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """Serialize a datetime to the canonical stored timestamp format."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return to_iso(utc_now())


# Enums matching the database schema constraints


class MessageRole(str, Enum):
    """Author of a chat message."""

    user = "user"
    assistant = "assistant"


class MessageStatus(str, Enum):
    """Status values for chat messages.

    Lifecycle: pending -> processing -> completed
    User messages are created directly in completed.
    """

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobStatus(str, Enum):
    """Status values for background jobs.

    Lifecycle: PENDING -> PROCESSING | STREAMING -> COMPLETED | FAILED
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobKind(str, Enum):
    """What a background job produces."""

    chat = "chat"
    tool = "tool"


class TimeOfDay(str, Enum):
    """Coarse time-of-day buckets recorded with sent notifications."""

    morning = "morning"
    afternoon = "afternoon"
    evening = "evening"
    night = "night"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Conversation(Base):
    """A coach chat thread owned by one user.

    Attributes:
        id: UUID primary key
        user_id: Owning user (issued by the auth subsystem)
        title: First 50 characters of the opening message
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of the last submitted or completed message
    """

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="[Message.sequence, Message.created_at]",
    )

    __table_args__ = (Index("idx_conversations_user_updated", "user_id", "updated_at"),)

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id!r}, user_id={self.user_id!r})>"


class Message(Base):
    """A single chat message.

    Only assistant messages ever hold pending/processing. A pending
    message has empty content until a worker claims and fills it.

    Attributes:
        id: UUID primary key
        conversation_id: Parent conversation
        sequence: Position within the conversation (insertion order)
        role: user or assistant
        content: Message text (empty while pending)
        status: pending, processing, completed or failed
        notification_sent: True once a push was attempted or the reply was seen
        attempt_count: Number of times a worker has claimed this message
        claimed_at: ISO8601 timestamp of the most recent claim
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MessageStatus.completed.value
    )
    notification_sent: Mapped[bool] = mapped_column(nullable=False, default=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="messages"
    )

    __table_args__ = (
        Index("idx_messages_role_status_created", "role", "status", "created_at"),
        Index("idx_messages_conversation_sequence", "conversation_id", "sequence"),
    )

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id!r}, role={self.role!r}, status={self.status!r})>"
        )


class Job(Base):
    """Background generation job (chat reply or tool generation).

    Owned exclusively by the pipeline. Created when a client initiates
    async generation, mutated only by the job runner and the claimer,
    terminal at COMPLETED/FAILED.

    Attributes:
        id: UUID primary key
        user_id: Owning user
        kind: chat or tool
        related_entity_id: Assistant message id (chat) or tool id (tool)
        conversation_id: Conversation for chat jobs
        status: PENDING, PROCESSING, STREAMING, COMPLETED or FAILED
        buffer: Accumulated (partial or final) output for resumable polling
        error: "[E-XXXX] message" when FAILED
        request_json: Serialized request payload used to (re)run the job
        external_queue_message_id: Message id assigned by the external queue
        client_connected: Best-effort flag; the client clears it when it detaches
        notification_sent: True once a completion push was attempted or the result seen
        lease_expires_at: Callback-processing lease for duplicate deliveries
        created_at: ISO8601 timestamp of job creation
        updated_at: ISO8601 timestamp of last update
        completed_at: ISO8601 timestamp when the job reached a terminal state
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobKind.chat.value
    )
    related_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value
    )
    buffer: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_queue_message_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True
    )
    client_connected: Mapped[bool] = mapped_column(nullable=False, default=True)
    notification_sent: Mapped[bool] = mapped_column(nullable=False, default=False)
    lease_expires_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_jobs_user_status", "user_id", "status"),
        Index("idx_jobs_related_entity", "related_entity_id"),
        Index("idx_jobs_queue_message", "external_queue_message_id"),
    )

    @property
    def is_terminal(self) -> bool:
        """True when the job reached COMPLETED or FAILED."""
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    def __repr__(self) -> str:
        return f"<Job(id={self.id!r}, kind={self.kind!r}, status={self.status!r})>"


class PushSubscription(Base):
    """A registered web-push endpoint for one of a user's devices.

    Deleted by the dispatcher itself when the push service reports the
    endpoint is gone (HTTP 404/410).
    """

    __tablename__ = "push_subscriptions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (Index("idx_push_subscriptions_user", "user_id"),)

    @property
    def keys(self) -> dict[str, str]:
        """Return the subscription keys in web-push subscription_info shape."""
        return {"p256dh": self.p256dh, "auth": self.auth}


class SentNotification(Base):
    """Append-only audit log of notifications sent to a user.

    Read when generating future notifications to avoid repeating a topic.
    Never mutated or deleted.
    """

    __tablename__ = "sent_notifications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    topic_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    time_of_day: Mapped[str] = mapped_column(String(20), nullable=False)
    sent_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (Index("idx_sent_notifications_user_sent", "user_id", "sent_at"),)


class AgendaItem(Base):
    """A scheduled event on the user's agenda (owned by the agenda subsystem)."""

    __tablename__ = "agenda_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_time: Mapped[str] = mapped_column(String(50), nullable=False)
    end_time: Mapped[str | None] = mapped_column(String(50), nullable=True)

    notification: Mapped["EventNotification | None"] = relationship(
        "EventNotification",
        back_populates="agenda_item",
        cascade="all, delete-orphan",
        uselist=False,
    )


class EventNotification(Base):
    """Before/after push notification settings for one agenda item.

    Each side has its own enabled flag, offset in minutes, sent flag and
    cached generated message so a side fires at most once.
    """

    __tablename__ = "event_notifications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    agenda_item_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("agenda_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    notify_before: Mapped[bool] = mapped_column(nullable=False, default=False)
    minutes_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    before_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    before_notification_sent: Mapped[bool] = mapped_column(nullable=False, default=False)
    before_sent_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    notify_after: Mapped[bool] = mapped_column(nullable=False, default=False)
    minutes_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    after_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    after_notification_sent: Mapped[bool] = mapped_column(nullable=False, default=False)
    after_sent_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    agenda_item: Mapped["AgendaItem"] = relationship(
        "AgendaItem", back_populates="notification"
    )


class JournalEntry(Base):
    """Journal entry as read by the coach context feed.

    Owned by the journaling subsystem; the pipeline only reads it.
    """

    __tablename__ = "journal_entries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    mood: Mapped[str | None] = mapped_column(String(50), nullable=True)
    date: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    __table_args__ = (Index("idx_journal_entries_user_date", "user_id", "date"),)
