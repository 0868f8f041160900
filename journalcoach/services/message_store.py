"""Message store with claim semantics for pending assistant replies.

This module provides the durable record of conversations and chat
messages. All mutation of a reply's status goes through conditional
single-row UPDATEs whose affected-row count decides the outcome:

- claim_pending(): pending -> processing only if still pending. If N
  workers race on one message exactly one observes True.
- reclaim_stale(): processing -> processing again only if the observed
  claimed_at is unchanged, for replies whose worker crashed.
- claim_notification(): notification_sent False -> True, so a reply is
  pushed at most once no matter how many notification passes overlap.

No lock is held while a reply is being generated; the claim is released
as soon as the UPDATE commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from journalcoach.db.models import (
    Conversation,
    Job,
    Message,
    MessageRole,
    MessageStatus,
    to_iso,
    utc_now,
)
from journalcoach.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50


def make_title(text: str) -> str:
    """Build a conversation title from the opening message."""
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


@dataclass
class SubmittedTurn:
    """Rows created by one submit: the user message and the reply placeholder."""

    conversation: Conversation
    user_message: Message
    assistant_message: Message
    seed_message: Message | None = None


class MessageStore:
    """Service for conversations and messages with claim semantics.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the store with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    # =========================================================================
    # Conversation Operations
    # =========================================================================

    def get_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        """Get a conversation owned by the user.

        Raises:
            NotFoundError: If missing or owned by another user.
        """
        conversation = (
            self.db.query(Conversation)
            .filter(Conversation.id == conversation_id, Conversation.user_id == user_id)
            .first()
        )
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    def submit_turn(
        self,
        user_id: str,
        text: str,
        conversation_id: str | None = None,
        initial_assistant_message: str | None = None,
        reply_status: MessageStatus = MessageStatus.pending,
        now: datetime | None = None,
    ) -> SubmittedTurn:
        """Record a user message and an empty assistant reply placeholder.

        Runs in a single transaction so a half-created conversation is never
        visible. A new conversation opened from a proactive notification is
        seeded with that assistant message first.

        Args:
            user_id: Submitting user.
            text: The user's message.
            conversation_id: Existing conversation, or None to start one.
            initial_assistant_message: Proactive message the user is replying to.
            reply_status: pending for claimer/job paths, processing for the
                streaming path which generates in-request.
            now: Override for the current time (tests).

        Returns:
            SubmittedTurn with all created rows.

        Raises:
            ValidationError: If text is empty.
            NotFoundError: If conversation_id is not the user's.
        """
        if not text or not text.strip():
            raise ValidationError("Message is required")

        moment = now or utc_now()
        stamp = to_iso(moment)
        try:
            if conversation_id:
                conversation = self.get_conversation(user_id, conversation_id)
            else:
                conversation = Conversation(
                    user_id=user_id,
                    title=make_title(text),
                    created_at=stamp,
                    updated_at=stamp,
                )
                self.db.add(conversation)
                self.db.flush()

            next_sequence = self._next_sequence(conversation.id)

            seed = None
            if initial_assistant_message and next_sequence == 0:
                seed = Message(
                    conversation_id=conversation.id,
                    sequence=next_sequence,
                    role=MessageRole.assistant.value,
                    content=initial_assistant_message,
                    status=MessageStatus.completed.value,
                    # Already seen via the notification that carried it
                    notification_sent=True,
                    created_at=stamp,
                    updated_at=stamp,
                )
                self.db.add(seed)
                next_sequence += 1

            user_message = Message(
                conversation_id=conversation.id,
                sequence=next_sequence,
                role=MessageRole.user.value,
                content=text,
                status=MessageStatus.completed.value,
                notification_sent=True,
                created_at=stamp,
                updated_at=stamp,
            )
            assistant_message = Message(
                conversation_id=conversation.id,
                sequence=next_sequence + 1,
                role=MessageRole.assistant.value,
                content="",
                status=reply_status.value,
                # In-request streaming replies are seen live
                notification_sent=reply_status != MessageStatus.pending,
                claimed_at=stamp if reply_status == MessageStatus.processing else None,
                attempt_count=1 if reply_status == MessageStatus.processing else 0,
                created_at=stamp,
                updated_at=stamp,
            )
            self.db.add_all([user_message, assistant_message])
            conversation.updated_at = stamp
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(assistant_message)
        return SubmittedTurn(
            conversation=conversation,
            user_message=user_message,
            assistant_message=assistant_message,
            seed_message=seed,
        )

    def _next_sequence(self, conversation_id: str) -> int:
        current = (
            self.db.query(func.max(Message.sequence))
            .filter(Message.conversation_id == conversation_id)
            .scalar()
        )
        return 0 if current is None else current + 1

    def touch_conversation(self, conversation_id: str, now: datetime | None = None) -> None:
        """Bump a conversation's updated_at."""
        self.db.query(Conversation).filter(Conversation.id == conversation_id).update(
            {"updated_at": to_iso(now or utc_now())}, synchronize_session=False
        )
        self.db.commit()

    def history(self, conversation_id: str) -> list[Message]:
        """Return all messages of a conversation in causal order."""
        return (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.sequence, Message.created_at)
            .all()
        )

    def recent_messages(self, conversation_id: str, limit: int = 5) -> list[Message]:
        """Return the last `limit` messages in chronological order."""
        rows = (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.sequence.desc(), Message.created_at.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(rows))

    # =========================================================================
    # Message Lookup
    # =========================================================================

    def get_message(self, message_id: str) -> Message | None:
        """Get a message by id regardless of owner."""
        return self.db.query(Message).filter(Message.id == message_id).first()

    def get_message_for_user(self, user_id: str, message_id: str) -> Message:
        """Get a message whose conversation belongs to the user.

        Raises:
            NotFoundError: If missing or owned by another user.
        """
        message = (
            self.db.query(Message)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .filter(Message.id == message_id, Conversation.user_id == user_id)
            .first()
        )
        if message is None:
            raise NotFoundError("Message", message_id)
        return message

    def list_pending(self) -> list[Message]:
        """All pending assistant replies, oldest first."""
        return (
            self.db.query(Message)
            .filter(
                Message.role == MessageRole.assistant.value,
                Message.status == MessageStatus.pending.value,
            )
            .order_by(Message.created_at, Message.sequence)
            .all()
        )

    def count_pending(self) -> int:
        """Number of pending assistant replies."""
        return (
            self.db.query(Message)
            .filter(
                Message.role == MessageRole.assistant.value,
                Message.status == MessageStatus.pending.value,
            )
            .count()
        )

    def list_stale_processing(self, stale_before: datetime) -> list[Message]:
        """Processing replies claimed before `stale_before`, oldest first."""
        return (
            self.db.query(Message)
            .filter(
                Message.role == MessageRole.assistant.value,
                Message.status == MessageStatus.processing.value,
                Message.claimed_at.is_not(None),
                Message.claimed_at <= to_iso(stale_before),
            )
            .order_by(Message.created_at, Message.sequence)
            .all()
        )

    # =========================================================================
    # Claim Operations
    # =========================================================================

    def claim_pending(self, message_id: str, now: datetime | None = None) -> bool:
        """Atomically move a reply from pending to processing.

        Args:
            message_id: The assistant message to claim.
            now: Override for the current time (tests).

        Returns:
            True if this caller claimed it; False if another worker already had.
        """
        stamp = to_iso(now or utc_now())
        claimed = (
            self.db.query(Message)
            .filter(
                Message.id == message_id,
                Message.status == MessageStatus.pending.value,
            )
            .update(
                {
                    "status": MessageStatus.processing.value,
                    "claimed_at": stamp,
                    "attempt_count": Message.attempt_count + 1,
                    "updated_at": stamp,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    def reclaim_stale(
        self,
        message_id: str,
        observed_claimed_at: str,
        now: datetime | None = None,
    ) -> bool:
        """Re-claim a processing reply whose worker appears to have crashed.

        The UPDATE only matches if claimed_at is still the value the caller
        observed, so two claimers cannot both take over the same reply.

        Returns:
            True if this caller took over the reply.
        """
        stamp = to_iso(now or utc_now())
        claimed = (
            self.db.query(Message)
            .filter(
                Message.id == message_id,
                Message.status == MessageStatus.processing.value,
                Message.claimed_at == observed_claimed_at,
            )
            .update(
                {
                    "claimed_at": stamp,
                    "attempt_count": Message.attempt_count + 1,
                    "updated_at": stamp,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    def release_claim(self, message_id: str, now: datetime | None = None) -> bool:
        """Hand an in-flight reply back to the claimer (processing -> pending).

        Used when the live stream producing it is abandoned. The reply will
        not be seen live, so it becomes eligible for a push again.

        Returns:
            True if the reply was released.
        """
        released = (
            self.db.query(Message)
            .filter(
                Message.id == message_id,
                Message.status == MessageStatus.processing.value,
            )
            .update(
                {
                    "status": MessageStatus.pending.value,
                    "content": "",
                    "claimed_at": None,
                    "notification_sent": False,
                    "updated_at": to_iso(now or utc_now()),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return released == 1

    def complete(
        self,
        message_id: str,
        content: str,
        now: datetime | None = None,
    ) -> bool:
        """Write the final reply content and mark it completed.

        Only a reply still in processing is completed, so a late worker
        cannot overwrite a reply another worker already finished.

        Raises:
            ValidationError: If content is empty.

        Returns:
            True if the reply was completed by this call.
        """
        if not content:
            raise ValidationError("A completed assistant message must not be empty")
        stamp = to_iso(now or utc_now())
        updated = (
            self.db.query(Message)
            .filter(
                Message.id == message_id,
                Message.status == MessageStatus.processing.value,
            )
            .update(
                {
                    "content": content,
                    "status": MessageStatus.completed.value,
                    "updated_at": stamp,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    # =========================================================================
    # Notification Operations
    # =========================================================================

    def list_notification_eligible(
        self, now: datetime, delay: timedelta
    ) -> list[Message]:
        """Completed replies that still need a push.

        A reply is eligible once it was completed longer ago than the delay
        window, or immediately when the chat job that produced it reports
        the client detached. Completion is the last write to updated_at;
        the seen and notified flags do not touch it.
        """
        threshold = to_iso(now - delay)
        detached_reply_ids = (
            self.db.query(Job.related_entity_id)
            .filter(Job.kind == "chat", Job.client_connected.is_(False))
        )
        return (
            self.db.query(Message)
            .filter(
                Message.role == MessageRole.assistant.value,
                Message.status == MessageStatus.completed.value,
                Message.notification_sent.is_(False),
                or_(
                    Message.updated_at <= threshold,
                    Message.id.in_(detached_reply_ids),
                ),
            )
            .order_by(Message.updated_at)
            .all()
        )

    def claim_notification(self, message_id: str) -> bool:
        """Flip notification_sent from False to True.

        Returns:
            True if this caller owns the (single) push attempt.
        """
        flipped = (
            self.db.query(Message)
            .filter(Message.id == message_id, Message.notification_sent.is_(False))
            .update({"notification_sent": True}, synchronize_session=False)
        )
        self.db.commit()
        return flipped == 1

    def mark_seen(self, user_id: str, message_id: str) -> Message:
        """Record that the user saw a reply so no push is sent for it.

        Raises:
            NotFoundError: If the message is not the user's.
        """
        message = self.get_message_for_user(user_id, message_id)
        if not message.notification_sent:
            message.notification_sent = True
            self.db.commit()
        return message
