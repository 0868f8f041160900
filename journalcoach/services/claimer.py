"""Pending-work claimer for assistant replies.

Runs on an external periodic trigger. Each pass:

1. Finds replies stuck in processing longer than the stale timeout,
   completing them with the fallback once they have used up their
   attempts.
2. Lists stale and pending replies, oldest first.
3. Works through them concurrently, bounded by a semaphore. Each reply
   is claimed only when a slot frees up, right before its generation, so
   claimed_at never includes time spent waiting. A lost claim is
   skipped. Every claimed reply is written completed before the pass
   ends.

Correctness under overlapping passes relies only on the conditional
updates in MessageStore, never on single-instance scheduling.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from journalcoach.cli.config import PipelineConfig
from journalcoach.db.models import Message, utc_now
from journalcoach.services.generator import (
    FALLBACK_REPLY,
    PreparedPrompt,
    ResponseGenerator,
    prepare_prompt,
)
from journalcoach.services.job_service import JobService
from journalcoach.services.journal_feed import DatabaseJournalFeed, JournalFeed
from journalcoach.services.message_store import MessageStore
from journalcoach.services.prompts import build_coach_context

logger = logging.getLogger(__name__)


@dataclass
class ClaimPassResult:
    """Counts from one claim pass."""

    processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    reclaimed: int = 0
    abandoned: int = 0
    fallbacks: int = 0
    message_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _ReplyContext:
    message_id: str
    conversation_id: str
    prompt: PreparedPrompt


def build_reply_prompt(
    db: Session,
    message: Message,
    journal_feed: JournalFeed,
    journal_limit: int,
) -> PreparedPrompt:
    """Coach prompt for filling `message` from its conversation history."""
    store = MessageStore(db)
    conversation = message.conversation
    entries = journal_feed.recent_entries(conversation.user_id, journal_limit)
    return prepare_prompt(
        store.history(conversation.id),
        build_coach_context(entries),
        exclude_message_id=message.id,
    )


class PendingWorkClaimer:
    """Claims and fills pending assistant replies."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        generator: ResponseGenerator,
        config: PipelineConfig,
        feed_factory: Callable[[Session], JournalFeed] = DatabaseJournalFeed,
    ) -> None:
        self.session_factory = session_factory
        self.generator = generator
        self.config = config
        self.feed_factory = feed_factory

    async def run_pass(self, now: datetime | None = None) -> ClaimPassResult:
        """Run one claim pass.

        Args:
            now: Override for the current time (tests).

        Returns:
            ClaimPassResult with per-outcome counts.
        """
        moment = now or utc_now()
        result = ClaimPassResult()

        work: list[tuple[str, str | None]] = self._collect_stale(moment, result)
        with self.session_factory() as db:
            pending = MessageStore(db).list_pending()
            result.processed = len(pending)
            logger.info("Claim pass: %d pending replies", len(pending))
            work.extend((message.id, None) for message in pending)

        if not work:
            return result

        semaphore = asyncio.Semaphore(self.config.claim_concurrency)

        async def _bounded(message_id: str, observed_claimed_at: str | None) -> bool | None:
            async with semaphore:
                if not self._claim(message_id, observed_claimed_at, now):
                    return None
                if observed_claimed_at is not None:
                    result.reclaimed += 1
                return await self._fill_reply(message_id, now)

        outcomes = await asyncio.gather(
            *(_bounded(message_id, observed) for message_id, observed in work),
            return_exceptions=True,
        )
        for (message_id, observed), outcome in zip(work, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Reply %s failed: %s", message_id, outcome)
                result.failed += 1
                self._force_fallback(message_id, now)
            elif outcome is None:
                if observed is None:
                    result.skipped += 1
            else:
                result.successful += 1
                result.message_ids.append(message_id)
                if not outcome:
                    result.fallbacks += 1

        logger.info(
            "Claim pass done: successful=%d skipped=%d failed=%d reclaimed=%d abandoned=%d",
            result.successful,
            result.skipped,
            result.failed,
            result.reclaimed,
            result.abandoned,
        )
        return result

    def _claim(
        self, message_id: str, observed_claimed_at: str | None, now: datetime | None
    ) -> bool:
        """Claim a reply just before generating it, so queued replies never look stale."""
        with self.session_factory() as db:
            store = MessageStore(db)
            if observed_claimed_at is None:
                claimed = store.claim_pending(message_id, now=now)
            else:
                claimed = store.reclaim_stale(message_id, observed_claimed_at, now=now)
        if not claimed:
            logger.debug("Reply %s already claimed, skipping", message_id)
        elif observed_claimed_at is not None:
            logger.info("Re-claimed stale reply %s", message_id)
        return claimed

    def _collect_stale(
        self, moment: datetime, result: ClaimPassResult
    ) -> list[tuple[str, str | None]]:
        """Find replies whose worker crashed.

        Replies out of attempts are completed with the fallback here. The
        rest are returned with the claimed_at they were seen with, for
        re-claiming when their generation starts.
        """
        to_retry: list[tuple[str, str | None]] = []
        stale_before = moment - timedelta(seconds=self.config.stale_claim_seconds)
        with self.session_factory() as db:
            store = MessageStore(db)
            jobs = JobService(db)
            for message in store.list_stale_processing(stale_before):
                if message.attempt_count < self.config.max_claim_attempts:
                    to_retry.append((message.id, message.claimed_at))
                    continue
                if not store.reclaim_stale(message.id, message.claimed_at, now=moment):
                    continue
                logger.warning(
                    "Reply %s exhausted %d attempts, completing with fallback",
                    message.id,
                    message.attempt_count,
                )
                if store.complete(message.id, FALLBACK_REPLY, now=moment):
                    store.touch_conversation(message.conversation_id, now=moment)
                    jobs.complete_for_message(message.id, FALLBACK_REPLY)
                result.abandoned += 1
        return to_retry

    def _load_context(self, message_id: str) -> _ReplyContext | None:
        with self.session_factory() as db:
            message = MessageStore(db).get_message(message_id)
            if message is None:
                return None
            prompt = build_reply_prompt(
                db,
                message,
                self.feed_factory(db),
                self.config.journal_context_limit,
            )
            return _ReplyContext(message.id, message.conversation_id, prompt)

    async def _fill_reply(self, message_id: str, now: datetime | None = None) -> bool:
        """Generate and store one reply. Returns False if the fallback was used."""
        context = self._load_context(message_id)
        if context is None:
            logger.warning("Claimed reply %s disappeared", message_id)
            return False

        # The session above is closed; nothing is held while the model runs
        generated = await self.generator.generate_reply(context.prompt)

        self._store_reply(context.message_id, context.conversation_id, generated.content, now)
        return not generated.used_fallback

    def _store_reply(
        self,
        message_id: str,
        conversation_id: str,
        content: str,
        now: datetime | None = None,
    ) -> None:
        with self.session_factory() as db:
            store = MessageStore(db)
            if store.complete(message_id, content, now=now):
                store.touch_conversation(conversation_id, now=now)
                JobService(db).complete_for_message(message_id, content)
            else:
                logger.info("Reply %s was completed by another worker", message_id)

    def _force_fallback(self, message_id: str, now: datetime | None = None) -> None:
        """Move a reply that errored unexpectedly to a visible terminal state."""
        with self.session_factory() as db:
            message = MessageStore(db).get_message(message_id)
            conversation_id = message.conversation_id if message else None
        if conversation_id is not None:
            self._store_reply(message_id, conversation_id, FALLBACK_REPLY, now)
