"""Tests for the chat, tool, agenda and check-in notification phases."""

from datetime import UTC, datetime, timedelta

import pytest

from journalcoach.cli.config import PushConfig
from journalcoach.db.models import (
    AgendaItem,
    EventNotification,
    JobKind,
    JobStatus,
    JournalEntry,
    Message,
    PushSubscription,
    SentNotification,
    to_iso,
    utc_now,
)
from journalcoach.services.job_service import JobService
from journalcoach.services.message_store import MessageStore
from journalcoach.services.notification_scheduler import (
    NotificationScheduler,
    after_window,
    before_window,
)
from journalcoach.services.push_dispatcher import PushDispatcher
from tests.conftest import OTHER_USER_ID, USER_ID, add_subscription, submit


def completed_reply(db, completed_at, content: str = "Hi!") -> str:
    turn = submit(db, now=completed_at)
    store = MessageStore(db)
    store.claim_pending(turn.assistant_message.id, now=completed_at)
    store.complete(turn.assistant_message.id, content, now=completed_at)
    return turn.assistant_message.id


def agenda_item(db, start, end=None, **settings) -> AgendaItem:
    item = AgendaItem(
        user_id=USER_ID,
        title="Job interview",
        location="Downtown",
        start_time=to_iso(start),
        end_time=to_iso(end) if end else None,
    )
    db.add(item)
    db.flush()
    db.add(EventNotification(agenda_item_id=item.id, user_id=USER_ID, **settings))
    db.commit()
    return item


@pytest.fixture
def unconfigured_scheduler(services, session_factory) -> NotificationScheduler:
    dispatcher = PushDispatcher(PushConfig(), session_factory)
    return NotificationScheduler(
        session_factory, dispatcher, services.generator, services.config.pipeline
    )


class TestChatPhase:
    """Verify the debounce and exactly-once delivery of reply pushes."""

    @pytest.mark.asyncio
    async def test_reply_within_delay_not_pushed(self, db, services, push_transport) -> None:
        add_subscription(db)
        t0 = utc_now()
        completed_reply(db, t0)

        result = await services.scheduler.run_chat_phase(now=t0 + timedelta(seconds=5))

        assert result.checked == 0
        assert push_transport.calls == []

    @pytest.mark.asyncio
    async def test_payload_shape(self, db, services, push_transport) -> None:
        add_subscription(db)
        t0 = utc_now()
        message_id = completed_reply(db, t0, content="You handled that well. " * 10)

        result = await services.scheduler.run_chat_phase(now=t0 + timedelta(minutes=1))

        assert result.sent == 1
        payload = push_transport.payloads[0]
        conversation_id = db.get(Message, message_id).conversation_id
        assert payload["title"] == "Coach replied"
        assert len(payload["body"]) == 100
        assert payload["body"].endswith("...")
        assert payload["tag"] == f"coach-response-{conversation_id}"
        assert payload["data"] == {"url": "/coach", "conversation_id": conversation_id}

    @pytest.mark.asyncio
    async def test_seen_reply_not_pushed(self, db, services, push_transport) -> None:
        add_subscription(db)
        t0 = utc_now()
        message_id = completed_reply(db, t0)
        MessageStore(db).mark_seen(USER_ID, message_id)

        result = await services.scheduler.run_chat_phase(now=t0 + timedelta(minutes=5))

        assert result.sent == 0
        assert push_transport.calls == []

    @pytest.mark.asyncio
    async def test_no_subscription_still_consumes_flag(self, db, services, push_transport) -> None:
        t0 = utc_now()
        message_id = completed_reply(db, t0)

        result = await services.scheduler.run_chat_phase(now=t0 + timedelta(minutes=1))

        assert result.claimed == 1
        assert result.sent == 0
        db.expire_all()
        assert db.get(Message, message_id).notification_sent is True

    @pytest.mark.asyncio
    async def test_unconfigured_push_skips_and_keeps_flag(
        self, db, unconfigured_scheduler
    ) -> None:
        add_subscription(db)
        t0 = utc_now()
        message_id = completed_reply(db, t0)

        result = await unconfigured_scheduler.run_chat_phase(now=t0 + timedelta(minutes=1))

        assert result.push_configured is False
        assert result.checked == 0
        db.expire_all()
        assert db.get(Message, message_id).notification_sent is False

    @pytest.mark.asyncio
    async def test_gone_endpoint_pruned_others_delivered(self, db, services, push_transport) -> None:
        add_subscription(db, endpoint="https://push.example/old")
        add_subscription(db, endpoint="https://push.example/new")
        push_transport.gone.add("https://push.example/old")
        t0 = utc_now()
        completed_reply(db, t0)

        result = await services.scheduler.run_chat_phase(now=t0 + timedelta(minutes=1))

        assert result.sent == 1
        db.expire_all()
        endpoints = [s.endpoint for s in db.query(PushSubscription).all()]
        assert endpoints == ["https://push.example/new"]


class TestToolPhase:
    @pytest.mark.asyncio
    async def test_unpolled_tool_job_pushed_once(self, db, services, push_transport) -> None:
        add_subscription(db)
        jobs = JobService(db)
        job = jobs.create_job(USER_ID, JobKind.tool)
        jobs.update_status(job.id, JobStatus.PROCESSING)
        jobs.complete(job.id, '{"title": "Mood tracker"}')
        later = utc_now() + timedelta(minutes=1)

        first = await services.scheduler.run_tool_phase(now=later)
        second = await services.scheduler.run_tool_phase(now=later)

        assert first.sent == 1
        assert second.checked == 0
        assert push_transport.payloads[0]["tag"] == f"tool-job-{job.id}"
        assert push_transport.payloads[0]["data"] == {"url": "/tools", "job_id": job.id}


class TestEventWindows:
    def test_before_window(self) -> None:
        start = utc_now()
        opens, closes = before_window(to_iso(start), 15)
        assert opens == start - timedelta(minutes=15)
        assert closes == start

    def test_after_window_anchors_on_end(self) -> None:
        start = utc_now()
        end = start + timedelta(hours=1)
        opens, closes = after_window(to_iso(start), to_iso(end), 10, 30)
        assert opens == end + timedelta(minutes=10)
        assert closes == opens + timedelta(minutes=30)

    def test_after_window_without_end_uses_start(self) -> None:
        start = utc_now()
        opens, _ = after_window(to_iso(start), None, 0, 30)
        assert opens == start


class TestEventPhase:
    """Verify before/after agenda notifications."""

    @pytest.mark.asyncio
    async def test_before_notification_generated_and_recorded(
        self, db, services, fake_model, push_transport
    ) -> None:
        add_subscription(db)
        now = utc_now()
        item = agenda_item(db, now + timedelta(minutes=10), notify_before=True, minutes_before=15)
        fake_model.replies = ['{"title": "Almost time", "body": "Your interview is soon. Breathe."}']

        result = await services.scheduler.run_event_phase(now=now)

        assert result.before_sent == 1
        payload = push_transport.payloads[0]
        assert payload["title"] == "Almost time"
        assert payload["tag"] == f"event-before-{item.id}"
        assert payload["data"] == {"url": "/journal"}

        db.expire_all()
        settings = db.query(EventNotification).one()
        assert settings.before_notification_sent is True
        assert settings.before_message == "Your interview is soon. Breathe."
        record = db.query(SentNotification).one()
        assert record.topic_reference == "Event: Job interview"

    @pytest.mark.asyncio
    async def test_each_side_fires_once(self, db, services, push_transport) -> None:
        add_subscription(db)
        now = utc_now()
        agenda_item(db, now + timedelta(minutes=10), notify_before=True, minutes_before=15)

        await services.scheduler.run_event_phase(now=now)
        again = await services.scheduler.run_event_phase(now=now + timedelta(minutes=1))

        assert again.before_sent == 0
        assert len(push_transport.calls) == 1

    @pytest.mark.asyncio
    async def test_outside_window_not_sent(self, db, services, push_transport) -> None:
        add_subscription(db)
        now = utc_now()
        agenda_item(db, now + timedelta(hours=2), notify_before=True, minutes_before=15)

        result = await services.scheduler.run_event_phase(now=now)

        assert result.before_sent == 0
        assert push_transport.calls == []

    @pytest.mark.asyncio
    async def test_after_notification_uses_cached_message(
        self, db, services, fake_model, push_transport
    ) -> None:
        add_subscription(db)
        now = utc_now()
        start = now - timedelta(hours=2)
        end = now - timedelta(minutes=20)
        item = agenda_item(
            db,
            start,
            end,
            notify_after=True,
            minutes_after=15,
            after_message="How did the interview go?",
        )

        result = await services.scheduler.run_event_phase(now=now)

        assert result.after_sent == 1
        assert fake_model.calls == []
        payload = push_transport.payloads[0]
        assert payload["title"] == "Event Follow-up"
        assert payload["body"] == "How did the interview go?"
        assert payload["tag"] == f"event-after-{item.id}"
        record = db.query(SentNotification).one()
        assert record.topic_reference == "Event follow-up: Job interview"

    @pytest.mark.asyncio
    async def test_unconfigured_push_skips_events(self, db, unconfigured_scheduler) -> None:
        now = utc_now()
        agenda_item(db, now + timedelta(minutes=10), notify_before=True, minutes_before=15)

        result = await unconfigured_scheduler.run_event_phase(now=now)

        assert result.push_configured is False
        db.expire_all()
        assert db.query(EventNotification).one().before_notification_sent is False


class TestCheckInPhase:
    """Verify proactive check-ins and the topic history fed to the model."""

    EVENING = datetime(2026, 3, 2, 19, 0, tzinfo=UTC)

    def _sent(self, db, body: str, topic: str, sent_at: datetime) -> None:
        db.add(
            SentNotification(
                user_id=USER_ID,
                title="Check-in",
                body=body,
                topic_reference=topic,
                time_of_day="morning",
                sent_at=to_iso(sent_at),
            )
        )
        db.commit()

    @pytest.mark.asyncio
    async def test_recent_topics_and_entries_in_prompt(
        self, db, services, fake_model, push_transport
    ) -> None:
        add_subscription(db)
        for content, age in (("Ran 10k", 1), ("Old entry", 9)):
            db.add(
                JournalEntry(
                    user_id=USER_ID,
                    content=content,
                    date=to_iso(self.EVENING - timedelta(days=age)),
                )
            )
        db.commit()
        self._sent(db, "How did the run feel?", "marathon training", self.EVENING - timedelta(hours=10))
        self._sent(db, "Long ago", "job search", self.EVENING - timedelta(days=5))
        fake_model.replies = [
            '{"title": "Evening", "body": "How are your legs after the 10k?", "topicReference": "recovery"}'
        ]

        result = await services.scheduler.run_checkin_phase(now=self.EVENING)

        assert result.time_of_day == "evening"
        assert result.sent == 1
        prompt = fake_model.calls[0]["history"][0]["content"]
        assert "Ran 10k" in prompt
        assert "Old entry" not in prompt
        assert "[Topic: marathon training]" in prompt
        assert "job search" not in prompt

        payload = push_transport.payloads[0]
        assert payload["body"] == "How are your legs after the 10k?"
        assert payload["data"] == {
            "url": "/coach",
            "initial_assistant_message": "How are your legs after the 10k?",
        }
        db.expire_all()
        latest = (
            db.query(SentNotification)
            .order_by(SentNotification.sent_at.desc())
            .first()
        )
        assert latest.topic_reference == "recovery"
        assert latest.time_of_day == "evening"

    @pytest.mark.asyncio
    async def test_parse_failure_sends_fallback(
        self, db, services, fake_model, push_transport
    ) -> None:
        add_subscription(db)
        fake_model.replies = ["I'd love to check in with them!"]

        result = await services.scheduler.run_checkin_phase(now=self.EVENING)

        assert result.sent == 1
        assert push_transport.payloads[0]["title"] == "Checking in"
        db.expire_all()
        assert db.query(SentNotification).one().topic_reference == "general check-in"

    @pytest.mark.asyncio
    async def test_undelivered_checkin_not_logged(self, db, services, push_transport) -> None:
        add_subscription(db, endpoint="https://push.example/gone")
        push_transport.gone.add("https://push.example/gone")

        result = await services.scheduler.run_checkin_phase(now=self.EVENING)

        assert result.users == 1
        assert result.failed == 1
        db.expire_all()
        assert db.query(SentNotification).count() == 0

    @pytest.mark.asyncio
    async def test_only_subscribed_users(self, db, services, fake_model) -> None:
        add_subscription(db, user_id=OTHER_USER_ID)

        result = await services.scheduler.run_checkin_phase(now=self.EVENING)

        assert result.users == 1
        assert len(fake_model.calls) == 1

    @pytest.mark.asyncio
    async def test_unconfigured_push_skips_checkins(
        self, db, unconfigured_scheduler, fake_model
    ) -> None:
        add_subscription(db)

        result = await unconfigured_scheduler.run_checkin_phase(now=self.EVENING)

        assert result.push_configured is False
        assert fake_model.calls == []
