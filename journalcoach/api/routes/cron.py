"""Cron-triggered pipeline passes.

An external scheduler calls these endpoints every few minutes. Failures
inside a pass are counted in the returned summary; the response itself
is always 200 once the secret checks out.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from journalcoach.api.deps import get_services
from journalcoach.api.middleware.auth import require_cron_secret
from journalcoach.db.connection import get_db
from journalcoach.db.models import utc_now
from journalcoach.services.message_store import MessageStore
from journalcoach.services.prompts import get_time_of_day
from journalcoach.services.pipeline import (
    PipelineServices,
    notify_events,
    process_pending,
    send_checkins,
    summarize,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


@router.post("/process-pending")
async def run_process_pending(
    services: PipelineServices = Depends(get_services),
) -> dict:
    """Claim and fill pending replies, then push the ones nobody has seen."""
    result = await process_pending(services)
    logger.info(
        "process-pending: %d processed, %d chat pushes",
        result.claim.processed,
        result.chat_notifications.sent,
    )
    return {"success": True, **summarize(result)}


@router.get("/process-pending")
def pending_count(db: Session = Depends(get_db)) -> dict:
    return {"pending": MessageStore(db).count_pending()}


@router.post("/event-notifications")
async def run_event_notifications(
    services: PipelineServices = Depends(get_services),
) -> dict:
    """Send the agenda before/after pushes that are due."""
    result = await notify_events(services)
    return {"success": True, **summarize(result)}


@router.post("/checkin-notifications")
async def run_checkin_notifications(
    services: PipelineServices = Depends(get_services),
) -> dict:
    """Send each subscribed user a generated check-in that avoids recent topics."""
    result = await send_checkins(services)
    return {"success": True, **summarize(result)}


@router.get("/checkin-notifications")
def checkin_info() -> dict:
    return {"current_time_of_day": get_time_of_day(utc_now()).value}
