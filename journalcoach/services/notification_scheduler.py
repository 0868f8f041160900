"""Notification scheduler for replies, tool jobs, agenda events and check-ins.

The reply, tool and event phases are idempotent under overlapping runs:
a notification is claimed by flipping its sent flag with a conditional
UPDATE before the push is attempted, and the flag is never reset. A user
without a valid subscription therefore loses that notification instead
of being retried every cycle.

Check-ins carry no flag. Each trigger sends one to every subscribed user
and logs it in sent_notifications, which later check-in prompts read to
avoid repeating a topic.

Phases are skipped entirely while push is not configured, so eligible
rows keep their unsent flag until keys are provided.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_
from sqlalchemy.orm import Session

from journalcoach.cli.config import PipelineConfig
from journalcoach.db.models import (
    AgendaItem,
    Conversation,
    EventNotification,
    JobKind,
    PushSubscription,
    SentNotification,
    from_iso,
    to_iso,
    utc_now,
)
from journalcoach.services.generator import ResponseGenerator
from journalcoach.services.job_service import JobService
from journalcoach.services.journal_feed import DatabaseJournalFeed, JournalFeed
from journalcoach.services.message_store import MessageStore
from journalcoach.services.prompts import (
    JournalEntryContext,
    RecentNotificationContext,
    get_time_of_day,
)
from journalcoach.services.push_dispatcher import PushDispatcher

logger = logging.getLogger(__name__)

CHAT_REPLY_TITLE = "Coach replied"
TOOL_READY_TITLE = "Your tool is ready"


@dataclass
class NotificationPhaseResult:
    """Counts from the chat-reply or tool-job notification phase."""

    push_configured: bool = True
    checked: int = 0
    claimed: int = 0
    sent: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EventPhaseResult:
    """Counts from the event notification phase."""

    push_configured: bool = True
    before_sent: int = 0
    after_sent: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CheckInPhaseResult:
    """Counts from one proactive check-in run."""

    push_configured: bool = True
    time_of_day: str = ""
    users: int = 0
    sent: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Outgoing:
    user_id: str
    title: str
    body: str
    tag: str
    data: dict


@dataclass
class _DueEvent:
    notification_id: str
    agenda_item_id: str
    user_id: str
    kind: str
    title: str
    description: str | None
    location: str | None
    start_time: str
    end_time: str | None
    cached_message: str | None


@dataclass
class _CheckInContext:
    user_id: str
    entries: list[JournalEntryContext] = field(default_factory=list)
    recent: list[RecentNotificationContext] = field(default_factory=list)


def before_window(start_time: str, minutes_before: int) -> tuple[datetime, datetime]:
    """[start - minutes_before, start)."""
    start = from_iso(start_time)
    return start - timedelta(minutes=minutes_before), start


def after_window(
    start_time: str, end_time: str | None, minutes_after: int, window_minutes: int
) -> tuple[datetime, datetime]:
    """[anchor + minutes_after, that + window); anchor is the end, else the start."""
    anchor = from_iso(end_time or start_time)
    fire_at = anchor + timedelta(minutes=minutes_after)
    return fire_at, fire_at + timedelta(minutes=window_minutes)


class NotificationScheduler:
    """Decides which completed work still needs a push and sends it."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: PushDispatcher,
        generator: ResponseGenerator,
        config: PipelineConfig,
        feed_factory: Callable[[Session], JournalFeed] = DatabaseJournalFeed,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.generator = generator
        self.config = config
        self.feed_factory = feed_factory

    @property
    def delay(self) -> timedelta:
        return timedelta(seconds=self.config.notification_delay_seconds)

    async def _push(self, outgoing: _Outgoing) -> bool:
        return await asyncio.to_thread(
            self.dispatcher.send,
            outgoing.user_id,
            outgoing.title,
            outgoing.body,
            outgoing.tag,
            outgoing.data,
        )

    async def _send_all(
        self, outgoing: list[_Outgoing], result: NotificationPhaseResult
    ) -> None:
        for item in outgoing:
            try:
                if await self._push(item):
                    result.sent += 1
            except Exception as e:
                logger.error("Push to user %s failed: %s", item.user_id, e)
                result.errors += 1

    # =========================================================================
    # Chat Replies
    # =========================================================================

    async def run_chat_phase(self, now: datetime | None = None) -> NotificationPhaseResult:
        """Push completed replies that are past the delay or whose client detached."""
        result = NotificationPhaseResult()
        if not self.dispatcher.is_configured:
            logger.info("Push not configured; skipping chat-reply notifications")
            result.push_configured = False
            return result

        moment = now or utc_now()
        outgoing: list[_Outgoing] = []
        with self.session_factory() as db:
            store = MessageStore(db)
            eligible = store.list_notification_eligible(moment, self.delay)
            result.checked = len(eligible)
            for message in eligible:
                if not store.claim_notification(message.id):
                    continue
                result.claimed += 1
                conversation = (
                    db.query(Conversation)
                    .filter(Conversation.id == message.conversation_id)
                    .one()
                )
                outgoing.append(
                    _Outgoing(
                        user_id=conversation.user_id,
                        title=CHAT_REPLY_TITLE,
                        body=message.content,
                        tag=f"coach-response-{conversation.id}",
                        data={"url": "/coach", "conversation_id": conversation.id},
                    )
                )

        await self._send_all(outgoing, result)
        logger.info(
            "Chat-reply notifications: checked=%d sent=%d errors=%d",
            result.checked,
            result.sent,
            result.errors,
        )
        return result

    # =========================================================================
    # Tool Jobs
    # =========================================================================

    async def run_tool_phase(self, now: datetime | None = None) -> NotificationPhaseResult:
        """Push completed tool jobs the client did not pick up."""
        result = NotificationPhaseResult()
        if not self.dispatcher.is_configured:
            result.push_configured = False
            return result

        moment = now or utc_now()
        outgoing: list[_Outgoing] = []
        with self.session_factory() as db:
            jobs = JobService(db)
            eligible = jobs.list_notification_eligible(JobKind.tool, moment, self.delay)
            result.checked = len(eligible)
            for job in eligible:
                if not jobs.claim_notification(job.id):
                    continue
                result.claimed += 1
                outgoing.append(
                    _Outgoing(
                        user_id=job.user_id,
                        title=TOOL_READY_TITLE,
                        body="Tap to open your new tool.",
                        tag=f"tool-job-{job.id}",
                        data={"url": "/tools", "job_id": job.id},
                    )
                )

        await self._send_all(outgoing, result)
        return result

    # =========================================================================
    # Agenda Events
    # =========================================================================

    async def run_event_phase(self, now: datetime | None = None) -> EventPhaseResult:
        """Send before/after agenda notifications whose window contains `now`."""
        result = EventPhaseResult()
        if not self.dispatcher.is_configured:
            logger.info("Push not configured; skipping event notifications")
            result.push_configured = False
            return result

        moment = now or utc_now()
        for due in self._claim_due_events(moment):
            try:
                await self._deliver_event(due, moment)
            except Exception as e:
                logger.error(
                    "Error sending %s notification for agenda item %s: %s",
                    due.kind,
                    due.agenda_item_id,
                    e,
                )
                result.errors += 1
                continue
            if due.kind == "before":
                result.before_sent += 1
            else:
                result.after_sent += 1

        logger.info(
            "Event notifications: before=%d after=%d errors=%d",
            result.before_sent,
            result.after_sent,
            result.errors,
        )
        return result

    def _claim_due_events(self, moment: datetime) -> list[_DueEvent]:
        due: list[_DueEvent] = []
        stamp = to_iso(moment)
        with self.session_factory() as db:
            rows = (
                db.query(EventNotification, AgendaItem)
                .join(AgendaItem, EventNotification.agenda_item_id == AgendaItem.id)
                .filter(
                    (
                        and_(
                            EventNotification.notify_before.is_(True),
                            EventNotification.before_notification_sent.is_(False),
                            EventNotification.minutes_before.is_not(None),
                        )
                    )
                    | (
                        and_(
                            EventNotification.notify_after.is_(True),
                            EventNotification.after_notification_sent.is_(False),
                            EventNotification.minutes_after.is_not(None),
                        )
                    )
                )
                .all()
            )
            for notification, item in rows:
                for kind in ("before", "after"):
                    if not self._in_window(notification, item, kind, moment):
                        continue
                    sent_flag = getattr(EventNotification, f"{kind}_notification_sent")
                    claimed = (
                        db.query(EventNotification)
                        .filter(
                            EventNotification.id == notification.id,
                            sent_flag.is_(False),
                        )
                        .update(
                            {
                                f"{kind}_notification_sent": True,
                                f"{kind}_sent_at": stamp,
                            },
                            synchronize_session=False,
                        )
                    )
                    db.commit()
                    if claimed != 1:
                        continue
                    due.append(
                        _DueEvent(
                            notification_id=notification.id,
                            agenda_item_id=item.id,
                            user_id=notification.user_id,
                            kind=kind,
                            title=item.title,
                            description=item.description,
                            location=item.location,
                            start_time=item.start_time,
                            end_time=item.end_time,
                            cached_message=getattr(notification, f"{kind}_message"),
                        )
                    )
        return due

    def _in_window(
        self,
        notification: EventNotification,
        item: AgendaItem,
        kind: str,
        moment: datetime,
    ) -> bool:
        if kind == "before":
            if (
                not notification.notify_before
                or notification.before_notification_sent
                or notification.minutes_before is None
            ):
                return False
            start, end = before_window(item.start_time, notification.minutes_before)
        else:
            if (
                not notification.notify_after
                or notification.after_notification_sent
                or notification.minutes_after is None
            ):
                return False
            start, end = after_window(
                item.start_time,
                item.end_time,
                notification.minutes_after,
                self.config.event_after_window_minutes,
            )
        return start <= moment < end

    async def _deliver_event(self, due: _DueEvent, moment: datetime) -> None:
        if due.cached_message:
            title = "Event Reminder" if due.kind == "before" else "Event Follow-up"
            body = due.cached_message
        else:
            generated = await self.generator.generate_event_message(
                due.kind,
                due.title,
                due.start_time,
                due.end_time,
                due.description,
                due.location,
            )
            title, body = generated.title, generated.body
            with self.session_factory() as db:
                db.query(EventNotification).filter(
                    EventNotification.id == due.notification_id
                ).update({f"{due.kind}_message": body}, synchronize_session=False)
                db.commit()

        await self._push(
            _Outgoing(
                user_id=due.user_id,
                title=title,
                body=body,
                tag=f"event-{due.kind}-{due.agenda_item_id}",
                data={"url": "/journal" if due.kind == "before" else "/coach"},
            )
        )

        topic = (
            f"Event: {due.title}" if due.kind == "before" else f"Event follow-up: {due.title}"
        )
        self._record_sent(due.user_id, title, body, topic, moment)

    def _record_sent(
        self, user_id: str, title: str, body: str, topic: str, moment: datetime
    ) -> None:
        with self.session_factory() as db:
            db.add(
                SentNotification(
                    user_id=user_id,
                    title=title,
                    body=body,
                    topic_reference=topic,
                    time_of_day=get_time_of_day(moment).value,
                    sent_at=to_iso(moment),
                )
            )
            db.commit()

    # =========================================================================
    # Proactive Check-ins
    # =========================================================================

    async def run_checkin_phase(self, now: datetime | None = None) -> CheckInPhaseResult:
        """Send a generated check-in to every user with a push subscription.

        The prompt for each user includes their recent journal entries and
        the notifications they were sent lately, so the model can pick a
        fresh topic. A check-in is logged only when some endpoint accepted it.
        """
        result = CheckInPhaseResult()
        if not self.dispatcher.is_configured:
            logger.info("Push not configured; skipping check-in notifications")
            result.push_configured = False
            return result

        moment = now or utc_now()
        time_of_day = get_time_of_day(moment)
        result.time_of_day = time_of_day.value

        contexts = self._load_checkin_contexts(moment)
        result.users = len(contexts)
        for context in contexts:
            message = await self.generator.generate_checkin(
                time_of_day, context.entries, context.recent
            )
            try:
                delivered = await self._push(
                    _Outgoing(
                        user_id=context.user_id,
                        title=message.title,
                        body=message.body,
                        tag=f"coach-checkin-{int(moment.timestamp())}",
                        data={"url": "/coach", "initial_assistant_message": message.body},
                    )
                )
            except Exception as e:
                logger.error("Check-in push to user %s failed: %s", context.user_id, e)
                result.failed += 1
                continue
            if not delivered:
                result.failed += 1
                continue
            self._record_sent(
                context.user_id, message.title, message.body, message.topic_reference, moment
            )
            result.sent += 1

        logger.info(
            "Check-in notifications (%s): users=%d sent=%d failed=%d",
            result.time_of_day,
            result.users,
            result.sent,
            result.failed,
        )
        return result

    def _load_checkin_contexts(self, moment: datetime) -> list[_CheckInContext]:
        journal_since = moment - timedelta(days=self.config.checkin_journal_days)
        history_since = to_iso(moment - timedelta(days=self.config.checkin_history_days))
        contexts: list[_CheckInContext] = []
        with self.session_factory() as db:
            user_ids = [
                row[0]
                for row in db.query(PushSubscription.user_id)
                .distinct()
                .order_by(PushSubscription.user_id)
                .all()
            ]
            feed = self.feed_factory(db)
            for user_id in user_ids:
                entries = [
                    entry
                    for entry in feed.recent_entries(user_id, self.config.checkin_journal_limit)
                    if from_iso(entry.date) >= journal_since
                ]
                sent = (
                    db.query(SentNotification)
                    .filter(
                        SentNotification.user_id == user_id,
                        SentNotification.sent_at >= history_since,
                    )
                    .order_by(SentNotification.sent_at.desc())
                    .limit(self.config.checkin_history_limit)
                    .all()
                )
                recent = [
                    RecentNotificationContext(
                        body=row.body,
                        time_of_day=row.time_of_day,
                        sent_at=row.sent_at,
                        topic_reference=row.topic_reference,
                    )
                    for row in sent
                ]
                contexts.append(_CheckInContext(user_id, entries, recent))
        return contexts
