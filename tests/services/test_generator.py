"""Tests for prompt preparation, fallback handling and typed JSON outputs."""

import pytest

from journalcoach.db.models import Message, MessageRole, MessageStatus, TimeOfDay
from journalcoach.errors import GeneratorFailure
from journalcoach.services.generator import (
    FALLBACK_REPLY,
    BufferedJobWriter,
    PreparedPrompt,
    ResponseGenerator,
    fallback_checkin,
    parse_json_object,
    prepare_prompt,
)
from journalcoach.services.prompts import (
    CHECKIN_SYSTEM_PROMPT,
    COACH_SYSTEM_PROMPT,
    JournalEntryContext,
    RecentNotificationContext,
    build_checkin_prompt,
    build_coach_context,
    get_time_of_day,
)
from tests.helpers import FakeLanguageModel


def _message(id: str, role: MessageRole, content: str, status=MessageStatus.completed) -> Message:
    return Message(id=id, conversation_id="c1", role=role.value, content=content, status=status.value)


class TestPreparePrompt:
    """History handed to the model always starts with a user turn."""

    def test_seed_folded_into_system_prompt(self) -> None:
        messages = [
            _message("seed", MessageRole.assistant, "How are you feeling today?"),
            _message("a", MessageRole.user, "Pretty tired."),
            _message("b", MessageRole.assistant, "", MessageStatus.pending),
        ]

        prompt = prepare_prompt(messages, "BASE", exclude_message_id="b")

        assert prompt.history == [{"role": "user", "content": "Pretty tired."}]
        assert prompt.system.startswith("BASE")
        assert "How are you feeling today?" in prompt.system

    def test_history_keeps_order_after_first_user(self) -> None:
        messages = [
            _message("a", MessageRole.user, "one"),
            _message("b", MessageRole.assistant, "two"),
            _message("c", MessageRole.user, "three"),
            _message("d", MessageRole.assistant, "", MessageStatus.pending),
        ]

        prompt = prepare_prompt(messages, "BASE", exclude_message_id="d")

        assert [turn["content"] for turn in prompt.history] == ["one", "two", "three"]
        assert prompt.system == "BASE"

    def test_failed_and_empty_rows_dropped(self) -> None:
        messages = [
            _message("a", MessageRole.user, "hi"),
            _message("b", MessageRole.assistant, "partial", MessageStatus.failed),
            _message("c", MessageRole.assistant, ""),
        ]
        prompt = prepare_prompt(messages, "BASE")
        assert prompt.history == [{"role": "user", "content": "hi"}]

    def test_no_user_message_gives_empty_history(self) -> None:
        messages = [_message("seed", MessageRole.assistant, "Hello!")]
        assert prepare_prompt(messages, "BASE").history == []


class TestCoachContext:
    def test_journal_entries_rendered(self) -> None:
        entries = [
            JournalEntryContext(date="2026-03-02T08:00:00+00:00", content="Ran 5k", mood="proud"),
            JournalEntryContext(date="2026-03-01T21:00:00+00:00", content="Slept badly"),
        ]
        context = build_coach_context(entries)

        assert context.startswith(COACH_SYSTEM_PROMPT)
        assert "## Recent Journal Entries (for context)" in context
        assert "[2026-03-02] (Mood: proud)\nRan 5k\n\n---\n\n[2026-03-01]\nSlept badly" in context

    def test_no_entries_leaves_prompt_alone(self) -> None:
        assert build_coach_context([]) == COACH_SYSTEM_PROMPT

    @pytest.mark.parametrize(
        ("stamp", "expected"),
        [
            ("2026-03-02T05:00:00+00:00", "morning"),
            ("2026-03-02T12:00:00+00:00", "afternoon"),
            ("2026-03-02T20:59:00+00:00", "evening"),
            ("2026-03-02T02:00:00+00:00", "night"),
        ],
    )
    def test_time_of_day(self, stamp, expected) -> None:
        assert get_time_of_day(stamp).value == expected


class TestResponseGenerator:
    @pytest.mark.asyncio
    async def test_reply_from_model(self) -> None:
        model = FakeLanguageModel(replies=["Hi!"])
        generator = ResponseGenerator(model, chat_max_tokens=1024)

        result = await generator.generate_reply(
            PreparedPrompt(system="S", history=[{"role": "user", "content": "hey"}])
        )

        assert result.content == "Hi!"
        assert result.used_fallback is False
        assert model.calls[0]["max_tokens"] == 1024

    @pytest.mark.asyncio
    async def test_empty_output_falls_back(self) -> None:
        generator = ResponseGenerator(FakeLanguageModel(replies=["   "]))

        result = await generator.generate_reply(
            PreparedPrompt(system="S", history=[{"role": "user", "content": "hey"}])
        )

        assert result.content == FALLBACK_REPLY
        assert result.error.code == "E-2004"

    @pytest.mark.asyncio
    async def test_upstream_failure_falls_back(self) -> None:
        model = FakeLanguageModel(error=GeneratorFailure("E-2001", detail="timed out"))
        result = await ResponseGenerator(model).generate_reply(
            PreparedPrompt(system="S", history=[{"role": "user", "content": "hey"}])
        )
        assert result.content == FALLBACK_REPLY
        assert result.used_fallback

    @pytest.mark.asyncio
    async def test_no_history_never_calls_model(self) -> None:
        model = FakeLanguageModel()
        result = await ResponseGenerator(model).generate_reply(PreparedPrompt(system="S"))
        assert result.content == FALLBACK_REPLY
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_stream_with_no_output_raises(self) -> None:
        generator = ResponseGenerator(FakeLanguageModel(chunks=[]))
        prompt = PreparedPrompt(system="S", history=[{"role": "user", "content": "hey"}])

        with pytest.raises(GeneratorFailure):
            async for _ in generator.stream_reply(prompt):
                pass

    @pytest.mark.asyncio
    async def test_event_message_parsed(self) -> None:
        model = FakeLanguageModel(
            replies=['```json\n{"title": "Big day", "body": "Your interview starts soon."}\n```']
        )
        message = await ResponseGenerator(model).generate_event_message(
            "before", "Interview", "2026-03-02T10:00:00+00:00"
        )
        assert message.title == "Big day"
        assert message.body == "Your interview starts soon."

    @pytest.mark.asyncio
    async def test_event_message_parse_failure_falls_back(self) -> None:
        model = FakeLanguageModel(replies=["Sure! Here's a reminder for you."])
        message = await ResponseGenerator(model).generate_event_message(
            "after", "Interview", "2026-03-02T10:00:00+00:00"
        )
        assert message.title == "Event Finished"
        assert "Interview" in message.body

    @pytest.mark.asyncio
    async def test_tool_validation_failure_raises(self) -> None:
        model = FakeLanguageModel(
            replies=['{"title": "Mood", "description": "Track mood", "html": "<div>no doc</div>"}']
        )
        with pytest.raises(GeneratorFailure) as exc_info:
            await ResponseGenerator(model).generate_tool("a mood tracker")
        assert exc_info.value.code == "E-2005"

    @pytest.mark.asyncio
    async def test_checkin_parsed_and_clipped(self) -> None:
        model = FakeLanguageModel(
            replies=[
                '{"title": "Morning!", "body": "' + "b" * 150 + '", "topicReference": "marathon training"}'
            ]
        )
        message = await ResponseGenerator(model).generate_checkin(TimeOfDay.morning, [], [])

        assert message.title == "Morning!"
        assert len(message.body) == 100
        assert message.topic_reference == "marathon training"
        assert model.calls[0]["system"] == CHECKIN_SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_checkin_without_topic_gets_default(self) -> None:
        model = FakeLanguageModel(replies=['{"title": "Hi", "body": "How was the run?"}'])
        message = await ResponseGenerator(model).generate_checkin(TimeOfDay.evening, [], [])
        assert message.topic_reference == "general check-in"

    @pytest.mark.asyncio
    async def test_checkin_parse_failure_falls_back(self) -> None:
        model = FakeLanguageModel(replies=["Here's a lovely check-in for you!"])
        message = await ResponseGenerator(model).generate_checkin(TimeOfDay.night, [], [])
        assert message == fallback_checkin(TimeOfDay.night)

    @pytest.mark.asyncio
    async def test_checkin_upstream_failure_falls_back(self) -> None:
        model = FakeLanguageModel(error=GeneratorFailure("E-2003", detail="overloaded"))
        message = await ResponseGenerator(model).generate_checkin(TimeOfDay.morning, [], [])
        assert message.title == "Checking in"


class TestCheckInPrompt:
    def test_recent_topics_and_entries_listed(self) -> None:
        prompt = build_checkin_prompt(
            TimeOfDay.evening,
            [JournalEntryContext(date="2026-03-01T08:00:00+00:00", content="x" * 600, mood="calm")],
            [
                RecentNotificationContext(
                    body="How did the run feel?",
                    time_of_day="morning",
                    sent_at="2026-03-01T09:15:00.000000+00:00",
                    topic_reference="marathon training",
                )
            ],
        )

        assert prompt.startswith("Current time of day: evening")
        assert "[2026-03-01] (Mood: calm)\n" + "x" * 500 + "..." in prompt
        assert "avoid repeating these topics" in prompt
        assert '- "How did the run feel?" (morning, 2026-03-01 09:15) [Topic: marathon training]' in prompt

    def test_no_entries_asks_for_journal_reminder(self) -> None:
        prompt = build_checkin_prompt(TimeOfDay.morning, [], [])
        assert "gentle reminder to journal" in prompt
        assert "Recent Notifications" not in prompt


class TestParseJsonObject:
    def test_prose_around_json(self) -> None:
        assert parse_json_object('Here you go: {"a": 1} enjoy') == {"a": 1}

    def test_not_an_object(self) -> None:
        with pytest.raises(GeneratorFailure):
            parse_json_object("[1, 2]")


class TestBufferedJobWriter:
    def test_flushes_on_size(self) -> None:
        flushed: list[str] = []
        writer = BufferedJobWriter(flushed.append, interval=60, max_chars=5, clock=lambda: 0.0)

        writer.add("ab")
        writer.add("cd")
        assert flushed == []
        writer.add("ef")
        assert flushed == ["abcdef"]

    def test_flushes_on_interval(self) -> None:
        now = [0.0]
        flushed: list[str] = []
        writer = BufferedJobWriter(flushed.append, interval=1.0, max_chars=1000, clock=lambda: now[0])

        writer.add("a")
        now[0] = 0.5
        writer.add("b")
        assert flushed == []
        now[0] = 1.2
        writer.add("c")
        assert flushed == ["abc"]
        assert writer.flush_count == 1

    def test_final_flush_writes_remainder(self) -> None:
        flushed: list[str] = []
        writer = BufferedJobWriter(flushed.append, interval=60, max_chars=1000, clock=lambda: 0.0)
        writer.add("tail")
        writer.flush()
        writer.flush()
        assert flushed == ["tail"]
