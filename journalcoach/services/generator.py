"""Response generator for coach replies, event messages and tools.

This module turns stored conversation history into a model request and
guarantees the pipeline never persists an empty assistant reply:

1. prepare_prompt() drops the pending placeholder and empty rows, starts
   the history at the first user message, and folds any leading
   assistant messages (proactive check-ins) into the system prompt.
2. generate_reply() calls the model and substitutes FALLBACK_REPLY on
   any GeneratorFailure.
3. BufferedJobWriter batches streamed chunks into job buffer writes at
   bounded intervals instead of writing on every token.
4. generate_event_message(), generate_checkin() and generate_tool() parse
   JSON-shaped output into typed results with an explicit parse-failure
   path.
"""

import json
import logging
import re
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from journalcoach.db.models import Message, MessageRole, MessageStatus, TimeOfDay
from journalcoach.errors import GeneratorFailure
from journalcoach.services.language_model import ChatTurn, LanguageModel
from journalcoach.services.prompts import (
    CHECKIN_SYSTEM_PROMPT,
    EVENT_MESSAGE_SYSTEM_PROMPT,
    TOOL_SYSTEM_PROMPT,
    JournalEntryContext,
    RecentNotificationContext,
    build_checkin_prompt,
    build_event_message_prompt,
    build_tool_prompt,
    previous_message_block,
)

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I'm sorry, I wasn't able to generate a response. Please try again."
STREAM_FALLBACK_REPLY = (
    "I'm sorry, something went wrong while I was responding. Please try again."
)
EVENT_MESSAGE_MAX_TOKENS = 256
CHECKIN_TITLE_MAX_CHARS = 50
CHECKIN_BODY_MAX_CHARS = 100
CHECKIN_TOPIC_MAX_CHARS = 200
DEFAULT_CHECKIN_TOPIC = "general check-in"

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


@dataclass
class PreparedPrompt:
    """System prompt plus a history that starts with a user turn."""

    system: str
    history: list[ChatTurn] = field(default_factory=list)


@dataclass
class GenerationResult:
    """Final reply text, and the error when the fallback was substituted."""

    content: str
    error: GeneratorFailure | None = None

    @property
    def used_fallback(self) -> bool:
        return self.error is not None


def prepare_prompt(
    messages: Sequence[Message],
    base_system: str,
    exclude_message_id: str | None = None,
) -> PreparedPrompt:
    """Build the model-facing history from stored messages.

    Args:
        messages: Conversation messages in causal order.
        base_system: Coach system prompt (with journal context).
        exclude_message_id: The placeholder being filled.

    Returns:
        PreparedPrompt whose history is empty or starts with a user turn.
    """
    usable = [
        m
        for m in messages
        if m.id != exclude_message_id
        and m.content
        and m.status != MessageStatus.failed.value
    ]
    first_user = next(
        (i for i, m in enumerate(usable) if m.role == MessageRole.user.value), None
    )
    if first_user is None:
        return PreparedPrompt(system=base_system)

    system = base_system
    seeds = [m.content for m in usable[:first_user] if m.role == MessageRole.assistant.value]
    if seeds:
        system += previous_message_block(seeds)

    history = [{"role": m.role, "content": m.content} for m in usable[first_user:]]
    return PreparedPrompt(system=system, history=history)


def parse_json_object(text: str) -> dict:
    """Extract a JSON object from model output.

    Accepts bare JSON, JSON in a markdown code fence, or JSON surrounded
    by prose.

    Raises:
        GeneratorFailure: E-2005 if no JSON object can be parsed.
    """
    candidate = text.strip()
    if not candidate.startswith("{"):
        fenced = _CODE_FENCE.search(candidate)
        if fenced:
            candidate = fenced.group(1).strip()
        else:
            start, end = candidate.find("{"), candidate.rfind("}")
            if start != -1 and end > start:
                candidate = candidate[start : end + 1]
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise GeneratorFailure("E-2005", detail=str(e)) from e
    if not isinstance(parsed, dict):
        raise GeneratorFailure("E-2005", detail="expected a JSON object")
    return parsed


class EventMessage(BaseModel):
    """Generated before/after event notification text."""

    title: str
    body: str

    @field_validator("title", "body")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


def _clipped(value: str, limit: int) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value[:limit]


class CheckInMessage(BaseModel):
    """Generated proactive check-in, with the topic it drew on."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: str
    topic_reference: str = Field(default=DEFAULT_CHECKIN_TOPIC, alias="topicReference")

    @field_validator("title")
    @classmethod
    def clip_title(cls, value: str) -> str:
        return _clipped(value, CHECKIN_TITLE_MAX_CHARS)

    @field_validator("body")
    @classmethod
    def clip_body(cls, value: str) -> str:
        return _clipped(value, CHECKIN_BODY_MAX_CHARS)

    @field_validator("topic_reference", mode="before")
    @classmethod
    def topic_or_default(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_CHECKIN_TOPIC
        if isinstance(value, str):
            return value.strip()[:CHECKIN_TOPIC_MAX_CHARS]
        return value


class ToolResult(BaseModel):
    """Generated interactive tool."""

    title: str
    description: str
    html: str

    @field_validator("html")
    @classmethod
    def looks_like_html(cls, value: str) -> str:
        if "<!DOCTYPE html>" not in value and "<html" not in value:
            raise ValueError("missing DOCTYPE or html tag")
        return value


def fallback_event_message(kind: str, event_title: str) -> EventMessage:
    if kind == "before":
        return EventMessage(
            title="Event Coming Up",
            body=f'Your "{event_title}" is starting soon. Good luck!',
        )
    return EventMessage(
        title="Event Finished",
        body=f'How did "{event_title}" go? Feel free to reflect on it.',
    )


_CHECKIN_FALLBACK_BODIES = {
    TimeOfDay.morning: "Good morning! What's one thing you're looking forward to today?",
    TimeOfDay.afternoon: "How is your day going so far? Take a moment to check in.",
    TimeOfDay.evening: "How did today go? A few lines in your journal might help.",
    TimeOfDay.night: "Winding down? Jot down one thing you're grateful for today.",
}


def fallback_checkin(time_of_day: TimeOfDay) -> CheckInMessage:
    return CheckInMessage(
        title="Checking in",
        body=_CHECKIN_FALLBACK_BODIES[time_of_day],
        topic_reference=DEFAULT_CHECKIN_TOPIC,
    )


class BufferedJobWriter:
    """Accumulates streamed chunks and flushes them in batches.

    A flush happens when `interval` seconds have passed since the last
    flush or when `max_chars` characters are waiting, whichever is first.
    """

    def __init__(
        self,
        flush: Callable[[str], None],
        interval: float = 1.0,
        max_chars: int = 400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._flush = flush
        self.interval = interval
        self.max_chars = max_chars
        self._clock = clock
        self._pending: list[str] = []
        self._pending_chars = 0
        self._last_flush = clock()
        self.flush_count = 0

    def add(self, chunk: str) -> None:
        self._pending.append(chunk)
        self._pending_chars += len(chunk)
        if (
            self._pending_chars >= self.max_chars
            or self._clock() - self._last_flush >= self.interval
        ):
            self.flush()

    def flush(self) -> None:
        if not self._pending:
            return
        self._flush("".join(self._pending))
        self._pending = []
        self._pending_chars = 0
        self._last_flush = self._clock()
        self.flush_count += 1


class ResponseGenerator:
    """Calls the language model with prepared prompts and recovers failures."""

    def __init__(
        self,
        model: LanguageModel,
        chat_max_tokens: int = 1024,
        tool_max_tokens: int = 8192,
    ) -> None:
        self.model = model
        self.chat_max_tokens = chat_max_tokens
        self.tool_max_tokens = tool_max_tokens

    async def complete(self, prompt: PreparedPrompt, max_tokens: int | None = None) -> str:
        """Generate a reply, raising GeneratorFailure instead of falling back.

        Raises:
            GeneratorFailure: On upstream error or empty output.
        """
        if not prompt.history:
            raise GeneratorFailure("E-2005", detail="history has no user message")
        text = await self.model.complete(
            prompt.system, prompt.history, max_tokens or self.chat_max_tokens
        )
        if not text or not text.strip():
            raise GeneratorFailure("E-2004")
        return text

    async def generate_reply(
        self, prompt: PreparedPrompt, max_tokens: int | None = None
    ) -> GenerationResult:
        """Generate a reply that is never empty.

        Returns:
            GenerationResult with model text, or FALLBACK_REPLY and the error.
        """
        try:
            return GenerationResult(content=await self.complete(prompt, max_tokens))
        except GeneratorFailure as e:
            logger.warning("Reply generation failed, using fallback: %s", e)
            return GenerationResult(content=FALLBACK_REPLY, error=e)

    async def stream_reply(
        self, prompt: PreparedPrompt, max_tokens: int | None = None
    ) -> AsyncIterator[str]:
        """Yield reply chunks.

        Raises:
            GeneratorFailure: On upstream error, or if nothing was produced.
        """
        if not prompt.history:
            raise GeneratorFailure("E-2005", detail="history has no user message")
        produced = False
        async for chunk in self.model.stream(
            prompt.system, prompt.history, max_tokens or self.chat_max_tokens
        ):
            if chunk:
                produced = True
                yield chunk
        if not produced:
            raise GeneratorFailure("E-2004")

    async def generate_event_message(
        self,
        kind: str,
        title: str,
        start_time: str,
        end_time: str | None = None,
        description: str | None = None,
        location: str | None = None,
    ) -> EventMessage:
        """Generate before/after event text, falling back to fixed wording."""
        prompt = build_event_message_prompt(
            title, start_time, kind, end_time, description, location
        )
        try:
            text = await self.model.complete(
                EVENT_MESSAGE_SYSTEM_PROMPT,
                [{"role": "user", "content": prompt}],
                EVENT_MESSAGE_MAX_TOKENS,
            )
            return EventMessage.model_validate(parse_json_object(text))
        except (GeneratorFailure, PydanticValidationError) as e:
            logger.warning("Event message generation failed for %r: %s", title, e)
            return fallback_event_message(kind, title)

    async def generate_tool(
        self,
        feedback: str,
        current_title: str | None = None,
        current_html: str | None = None,
    ) -> ToolResult:
        """Generate or refine a tool.

        Raises:
            GeneratorFailure: On upstream error or unparseable output.
        """
        text = await self.model.complete(
            TOOL_SYSTEM_PROMPT,
            [{"role": "user", "content": build_tool_prompt(feedback, current_title, current_html)}],
            self.tool_max_tokens,
        )
        try:
            return ToolResult.model_validate(parse_json_object(text))
        except PydanticValidationError as e:
            raise GeneratorFailure("E-2005", detail=str(e)) from e

    async def generate_checkin(
        self,
        time_of_day: TimeOfDay,
        entries: list[JournalEntryContext],
        recent: list[RecentNotificationContext],
    ) -> CheckInMessage:
        """Generate a proactive check-in, falling back to a time-of-day prompt."""
        prompt = build_checkin_prompt(time_of_day, entries, recent)
        try:
            text = await self.model.complete(
                CHECKIN_SYSTEM_PROMPT,
                [{"role": "user", "content": prompt}],
                EVENT_MESSAGE_MAX_TOKENS,
            )
            return CheckInMessage.model_validate(parse_json_object(text))
        except (GeneratorFailure, PydanticValidationError) as e:
            logger.warning("Check-in generation failed, using fallback: %s", e)
            return fallback_checkin(time_of_day)
