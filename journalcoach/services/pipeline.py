"""Wiring of the reply pipeline from configuration.

Both the API process and the CLI build their collaborators here, so the
dispatcher, queue and verifier are always constructed from an explicit
CoachConfig rather than read from the environment ad hoc.
"""

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from journalcoach.cli.config import CoachConfig
from journalcoach.db.models import utc_now
from journalcoach.services.claimer import ClaimPassResult, PendingWorkClaimer
from journalcoach.services.generator import ResponseGenerator
from journalcoach.services.job_runner import ChatJobRunner
from journalcoach.services.language_model import AnthropicLanguageModel, LanguageModel
from journalcoach.services.notification_scheduler import (
    CheckInPhaseResult,
    EventPhaseResult,
    NotificationPhaseResult,
    NotificationScheduler,
)
from journalcoach.services.push_dispatcher import PushDispatcher
from journalcoach.services.queue_client import CallbackVerifier, QStashQueue

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    """Long-lived collaborators shared by requests and cron passes."""

    config: CoachConfig
    session_factory: Callable[[], Session]
    generator: ResponseGenerator
    dispatcher: PushDispatcher
    queue: QStashQueue
    verifier: CallbackVerifier
    claimer: PendingWorkClaimer
    scheduler: NotificationScheduler
    chat_runner: ChatJobRunner


@dataclass
class ProcessPendingResult:
    """Outcome of one process-pending trigger (claim phase + notification phases)."""

    claim: ClaimPassResult
    chat_notifications: NotificationPhaseResult
    tool_notifications: NotificationPhaseResult

    def to_dict(self) -> dict:
        return {
            "claim": self.claim.to_dict(),
            "chat_notifications": self.chat_notifications.to_dict(),
            "tool_notifications": self.tool_notifications.to_dict(),
        }


def build_services(
    config: CoachConfig,
    session_factory: Callable[[], Session],
    language_model: LanguageModel | None = None,
    dispatcher: PushDispatcher | None = None,
    queue: QStashQueue | None = None,
) -> PipelineServices:
    """Construct the pipeline from config; collaborators may be injected."""
    model = language_model or AnthropicLanguageModel(config.llm)
    generator = ResponseGenerator(
        model,
        chat_max_tokens=config.llm.chat_max_tokens,
        tool_max_tokens=config.llm.tool_max_tokens,
    )
    dispatcher = dispatcher or PushDispatcher(config.push, session_factory)
    if not dispatcher.is_configured:
        logger.warning("VAPID keys not configured; push notifications unsupported")
    return PipelineServices(
        config=config,
        session_factory=session_factory,
        generator=generator,
        dispatcher=dispatcher,
        queue=queue or QStashQueue(config.queue),
        verifier=CallbackVerifier.from_config(config.queue),
        claimer=PendingWorkClaimer(session_factory, generator, config.pipeline),
        scheduler=NotificationScheduler(
            session_factory, dispatcher, generator, config.pipeline
        ),
        chat_runner=ChatJobRunner(session_factory, generator, config),
    )


async def process_pending(
    services: PipelineServices, now: datetime | None = None
) -> ProcessPendingResult:
    """Run the claim phase, then the notification phases.

    The notification phases run even when nothing was pending.
    """
    moment = now or utc_now()
    claim = await services.claimer.run_pass(now=moment)
    chat = await services.scheduler.run_chat_phase(now=moment)
    tool = await services.scheduler.run_tool_phase(now=moment)
    return ProcessPendingResult(claim=claim, chat_notifications=chat, tool_notifications=tool)


async def notify_events(
    services: PipelineServices, now: datetime | None = None
) -> EventPhaseResult:
    """Run the agenda event notification phase."""
    return await services.scheduler.run_event_phase(now=now or utc_now())


async def send_checkins(
    services: PipelineServices, now: datetime | None = None
) -> CheckInPhaseResult:
    """Send a generated check-in to every subscribed user."""
    return await services.scheduler.run_checkin_phase(now=now or utc_now())


def summarize(result: ProcessPendingResult | EventPhaseResult | CheckInPhaseResult) -> dict:
    if isinstance(result, ProcessPendingResult):
        return result.to_dict()
    return asdict(result)
