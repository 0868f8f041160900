"""Job runners for chat replies and externally queued tool generation.

ChatJobRunner serves the job-queue variant of chat: a submit creates the
message rows plus a Job, and a background task fills the reply while the
client polls the job's buffer. It also drives the live SSE stream.

ToolJobService publishes tool-generation work to the external queue and
handles the queue's callbacks. Callbacks may arrive more than once and
concurrently; a terminal job short-circuits, and a short lease keeps
two live deliveries from generating at the same time.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy.orm import Session

from journalcoach.cli.config import CoachConfig
from journalcoach.db.models import Job, JobKind, JobStatus, MessageStatus
from journalcoach.errors import (
    ConflictError,
    GeneratorFailure,
    NotFoundError,
    PipelineError,
    QueueCallbackError,
    QueueNotConfigured,
    ValidationError,
    format_code,
)
from journalcoach.services.claimer import build_reply_prompt
from journalcoach.services.generator import (
    FALLBACK_REPLY,
    STREAM_FALLBACK_REPLY,
    BufferedJobWriter,
    PreparedPrompt,
    ResponseGenerator,
)
from journalcoach.services.job_service import JobService
from journalcoach.services.journal_feed import DatabaseJournalFeed, JournalFeed
from journalcoach.services.message_store import MessageStore, SubmittedTurn
from journalcoach.services.queue_client import TaskQueue

logger = logging.getLogger(__name__)

TOOL_CALLBACK_PATH = "/api/v1/tools/jobs/callback"
CALLBACK_LEASE = timedelta(minutes=5)


@dataclass
class StartedChatJob:
    job: Job
    existing: bool = False
    turn: SubmittedTurn | None = None


@dataclass
class StreamEvent:
    """One server-sent event of a live reply stream."""

    event: str
    data: dict = field(default_factory=dict)

    def to_sse(self) -> dict:
        return {"event": self.event, "data": json.dumps(self.data)}


class ChatJobRunner:
    """Creates chat jobs and fills their replies."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        generator: ResponseGenerator,
        config: CoachConfig,
        feed_factory: Callable[[Session], JournalFeed] = DatabaseJournalFeed,
    ) -> None:
        self.session_factory = session_factory
        self.generator = generator
        self.config = config
        self.feed_factory = feed_factory

    # =========================================================================
    # Job Creation
    # =========================================================================

    def start(
        self,
        db: Session,
        user_id: str,
        text: str | None = None,
        conversation_id: str | None = None,
        initial_assistant_message: str | None = None,
        message_id: str | None = None,
    ) -> StartedChatJob:
        """Create a chat job for a new message or an existing pending reply.

        Args:
            db: Request session.
            user_id: Requesting user.
            text: New user message; submits a turn first.
            conversation_id: Conversation for the new message.
            initial_assistant_message: Seed for a new conversation.
            message_id: Existing pending assistant reply to attach a job to.

        Returns:
            StartedChatJob; `existing` is True when an active job was reused.

        Raises:
            ValidationError: If neither text nor message_id is given.
            ConflictError: If message_id is no longer pending.
        """
        jobs = JobService(db)
        store = MessageStore(db)

        if message_id:
            message = store.get_message_for_user(user_id, message_id)
            active = jobs.find_active(JobKind.chat, message.id)
            if active is not None:
                return StartedChatJob(job=active, existing=True)
            if message.status != MessageStatus.pending.value:
                raise ConflictError(f"Message '{message_id}' is already {message.status}")
            job = jobs.create_job(
                user_id,
                JobKind.chat,
                related_entity_id=message.id,
                conversation_id=message.conversation_id,
            )
            return StartedChatJob(job=job)

        if not text:
            raise ValidationError(format_code("E-1001", fields="message or message_id"))

        turn = store.submit_turn(
            user_id,
            text,
            conversation_id=conversation_id,
            initial_assistant_message=initial_assistant_message,
        )
        job = jobs.create_job(
            user_id,
            JobKind.chat,
            related_entity_id=turn.assistant_message.id,
            conversation_id=turn.conversation.id,
        )
        return StartedChatJob(job=job, turn=turn)

    # =========================================================================
    # Background Processing
    # =========================================================================

    def _load_prompt(self, message_id: str) -> PreparedPrompt:
        with self.session_factory() as db:
            message = MessageStore(db).get_message(message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            return build_reply_prompt(
                db,
                message,
                self.feed_factory(db),
                self.config.pipeline.journal_context_limit,
            )

    def _append(self, job_id: str, chunk: str) -> None:
        with self.session_factory() as db:
            JobService(db).append_buffer(job_id, chunk)

    async def process(self, job_id: str) -> None:
        """Fill the reply of a chat job, streaming into the job buffer.

        Safe to call more than once: a terminal job or a reply another
        worker already claimed is left alone.
        """
        with self.session_factory() as db:
            jobs = JobService(db)
            job = jobs.get_job(job_id)
            if job is None or job.is_terminal:
                logger.info("Chat job %s is missing or terminal, nothing to do", job_id)
                return
            message_id = job.related_entity_id
            if not MessageStore(db).claim_pending(message_id):
                logger.info("Reply %s for job %s already claimed", message_id, job_id)
                return
            jobs.update_status(job_id, JobStatus.STREAMING)

        content = ""
        try:
            prompt = self._load_prompt(message_id)
            writer = BufferedJobWriter(
                lambda chunk: self._append(job_id, chunk),
                interval=self.config.pipeline.stream_flush_seconds,
                max_chars=self.config.pipeline.stream_flush_chars,
            )
            parts: list[str] = []
            async for chunk in self.generator.stream_reply(
                prompt, self.config.llm.job_max_tokens
            ):
                parts.append(chunk)
                writer.add(chunk)
            writer.flush()
            content = "".join(parts)
        except GeneratorFailure as e:
            logger.warning("Chat job %s failed: %s", job_id, e)
            self._finish(job_id, message_id, FALLBACK_REPLY, error=str(e))
            return
        except Exception as e:
            logger.exception("Chat job %s crashed", job_id)
            self._finish(
                job_id,
                message_id,
                FALLBACK_REPLY,
                error=format_code("E-5001", detail=str(e)),
            )
            return

        self._finish(job_id, message_id, content)

    def _finish(
        self, job_id: str, message_id: str, content: str, error: str | None = None
    ) -> None:
        """Write the reply and move the job to its terminal state."""
        with self.session_factory() as db:
            store = MessageStore(db)
            jobs = JobService(db)
            message = store.get_message(message_id)
            if store.complete(message_id, content) and message is not None:
                store.touch_conversation(message.conversation_id)
            job = jobs.get_job(job_id)
            if job is None or job.is_terminal:
                return
            if error is None:
                jobs.complete(job_id, content)
            else:
                jobs.fail(job_id, error)

    def poll(self, db: Session, user_id: str, job_id: str) -> Job:
        """Return a chat job for its owner; a finished job counts as seen."""
        jobs = JobService(db)
        job = jobs.get_job_for_user(user_id, job_id)
        if job.is_terminal and job.related_entity_id:
            MessageStore(db).mark_seen(user_id, job.related_entity_id)
            jobs.mark_seen(job)
        return job

    # =========================================================================
    # Live Streaming
    # =========================================================================

    async def stream(
        self,
        user_id: str,
        text: str,
        conversation_id: str | None = None,
        initial_assistant_message: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Generate a reply while streaming it to the connected client.

        The reply is created in processing (claimed by this request) and
        marked seen, since the client watches it arrive. A STREAMING job
        mirrors the output so a reconnecting client can resume from the
        buffer. If the client goes away mid-stream, the reply is handed
        back to the claimer and the job is marked detached so the user is
        pushed the finished reply.

        Raises:
            ValidationError: If text is empty (before any event is sent).
            NotFoundError: If conversation_id is not the user's.
        """
        with self.session_factory() as db:
            turn = MessageStore(db).submit_turn(
                user_id,
                text,
                conversation_id=conversation_id,
                initial_assistant_message=initial_assistant_message,
                reply_status=MessageStatus.processing,
            )
            job = JobService(db).create_job(
                user_id,
                JobKind.chat,
                related_entity_id=turn.assistant_message.id,
                conversation_id=turn.conversation.id,
                status=JobStatus.STREAMING,
                notification_sent=True,
            )
            message_id = turn.assistant_message.id
            job_id = job.id
            init = StreamEvent(
                "init",
                {
                    "conversation_id": turn.conversation.id,
                    "user_message_id": turn.user_message.id,
                    "message_id": message_id,
                    "job_id": job_id,
                },
            )

        parts: list[str] = []
        finished = False
        try:
            yield init
            prompt = self._load_prompt(message_id)
            writer = BufferedJobWriter(
                lambda chunk: self._append(job_id, chunk),
                interval=self.config.pipeline.stream_flush_seconds,
                max_chars=self.config.pipeline.stream_flush_chars,
            )
            try:
                async for chunk in self.generator.stream_reply(
                    prompt, self.config.llm.chat_max_tokens
                ):
                    parts.append(chunk)
                    writer.add(chunk)
                    yield StreamEvent("delta", {"text": chunk})
                writer.flush()
            except GeneratorFailure as e:
                logger.warning("Stream for reply %s failed: %s", message_id, e)
                self._finish(job_id, message_id, STREAM_FALLBACK_REPLY, error=str(e))
                finished = True
                yield StreamEvent(
                    "error", {"message_id": message_id, "content": STREAM_FALLBACK_REPLY}
                )
                return

            content = "".join(parts)
            self._finish(job_id, message_id, content)
            finished = True
            yield StreamEvent("done", {"message_id": message_id, "content": content})
        except (asyncio.CancelledError, GeneratorExit):
            if not finished:
                self._abandon(job_id, message_id)
            raise

    def _abandon(self, job_id: str, message_id: str) -> None:
        logger.info("Client left stream for reply %s; handing it to the claimer", message_id)
        with self.session_factory() as db:
            MessageStore(db).release_claim(message_id)
            job = JobService(db).get_job(job_id)
            if job is not None and not job.is_terminal:
                job.client_connected = False
                db.commit()


@dataclass
class CallbackOutcome:
    """Response body for a queue callback."""

    status: str
    body: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"status": self.status, **self.body}


class ToolJobService:
    """Tool generation through the external task queue."""

    def __init__(
        self,
        db: Session,
        generator: ResponseGenerator,
        queue: TaskQueue | None,
    ) -> None:
        self.db = db
        self.jobs = JobService(db)
        self.generator = generator
        self.queue = queue

    async def enqueue(
        self,
        user_id: str,
        tool_id: str,
        feedback: str,
        current_title: str | None = None,
        current_html: str | None = None,
    ) -> tuple[Job, bool]:
        """Create a tool job and publish it.

        Returns:
            (job, existing) where existing is True if an active job was reused.

        Raises:
            QueueNotConfigured: If the queue has no token.
            ValidationError: If tool_id or feedback are missing.
            PipelineError: E-3002 if publishing failed (the job is FAILED).
        """
        if self.queue is None or not self.queue.is_configured:
            raise QueueNotConfigured()
        missing = [name for name, value in (("tool_id", tool_id), ("feedback", feedback)) if not value]
        if missing:
            raise ValidationError(format_code("E-1001", fields=", ".join(missing)))

        active = self.jobs.find_active(JobKind.tool, tool_id)
        if active is not None:
            return active, True

        request = {
            "tool_id": tool_id,
            "feedback": feedback,
            "current_title": current_title,
            "current_html": current_html,
        }
        job = self.jobs.create_job(
            user_id,
            JobKind.tool,
            related_entity_id=tool_id,
            request_json=json.dumps(request),
        )
        try:
            queue_message_id = await self.queue.enqueue(
                TOOL_CALLBACK_PATH, {"job_id": job.id, "user_id": user_id}
            )
        except PipelineError as e:
            self.jobs.fail(job.id, str(e))
            raise

        self.jobs.set_queue_message_id(job.id, queue_message_id)
        job = self.jobs.update_status(job.id, JobStatus.PROCESSING)
        return job, False

    async def handle_callback(self, payload: dict) -> CallbackOutcome:
        """Process one (possibly duplicate) queue delivery.

        Raises:
            ValidationError: If job_id/user_id are missing.
            NotFoundError: If the job does not exist.
            ConflictError: If another delivery holds the lease.
            QueueCallbackError: If generation failed; the job is FAILED first
                so a retried delivery short-circuits.
        """
        job_id = payload.get("job_id")
        user_id = payload.get("user_id")
        missing = [name for name, value in (("job_id", job_id), ("user_id", user_id)) if not value]
        if missing:
            raise ValidationError(format_code("E-1001", fields=", ".join(missing)))

        job = self.jobs.get_job(job_id)
        if job is None or job.user_id != user_id:
            raise NotFoundError("Job", job_id)

        short_circuit = self._terminal_outcome(job)
        if short_circuit is not None:
            return short_circuit

        if not self.jobs.acquire_lease(job_id, CALLBACK_LEASE):
            self.db.refresh(job)
            short_circuit = self._terminal_outcome(job)
            if short_circuit is not None:
                return short_circuit
            raise ConflictError(f"Job '{job_id}' is being processed by another delivery")

        self.db.refresh(job)
        if JobStatus(job.status) == JobStatus.PENDING:
            self.jobs.update_status(job_id, JobStatus.PROCESSING)

        request = json.loads(job.request_json or "{}")
        logger.info("Generating tool for job %s", job_id)
        try:
            tool = await self.generator.generate_tool(
                request.get("feedback", ""),
                request.get("current_title"),
                request.get("current_html"),
            )
        except Exception as e:
            error = format_code("E-3003", detail=str(e))
            logger.error("Tool job %s failed: %s", job_id, error)
            self.jobs.fail(job_id, error)
            raise QueueCallbackError("E-3003", detail=str(e)) from e

        self.jobs.complete(job_id, tool.model_dump_json())
        logger.info("Tool job %s completed: %s", job_id, tool.title)
        return CallbackOutcome("completed", {"job_id": job_id})

    def _terminal_outcome(self, job: Job) -> CallbackOutcome | None:
        if job.status == JobStatus.COMPLETED.value:
            logger.info("Tool job %s already completed", job.id)
            return CallbackOutcome("already_completed", {"job_id": job.id})
        if job.status == JobStatus.FAILED.value:
            logger.info("Tool job %s already failed", job.id)
            return CallbackOutcome("already_failed", {"job_id": job.id, "error": job.error})
        return None

    def poll(self, user_id: str, job_id: str) -> Job:
        """Return a tool job for its owner; a finished job counts as seen."""
        job = self.jobs.get_job_for_user(user_id, job_id)
        self.jobs.mark_seen(job)
        return job
