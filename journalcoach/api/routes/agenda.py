"""FastAPI routes for agenda event notification settings."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from journalcoach.api.deps import get_current_user_id
from journalcoach.api.schemas import EventNotificationRequest, EventNotificationResponse
from journalcoach.db.connection import get_db
from journalcoach.db.models import EventNotification
from journalcoach.services.agenda_notifications import AgendaNotificationService

router = APIRouter(prefix="/agenda", tags=["agenda"])


def get_agenda_service(db: Session = Depends(get_db)) -> AgendaNotificationService:
    """Dependency to get AgendaNotificationService instance."""
    return AgendaNotificationService(db)


@router.put("/{agenda_item_id}/notification", response_model=EventNotificationResponse)
def configure_notification(
    agenda_item_id: str,
    body: EventNotificationRequest,
    user_id: str = Depends(get_current_user_id),
    service: AgendaNotificationService = Depends(get_agenda_service),
) -> EventNotification:
    """Enable or disable the before/after pushes of an agenda item."""
    return service.configure(
        user_id,
        agenda_item_id,
        notify_before=body.notify_before,
        minutes_before=body.minutes_before,
        notify_after=body.notify_after,
        minutes_after=body.minutes_after,
    )


@router.get("/{agenda_item_id}/notification", response_model=EventNotificationResponse)
def get_notification(
    agenda_item_id: str,
    user_id: str = Depends(get_current_user_id),
    service: AgendaNotificationService = Depends(get_agenda_service),
) -> EventNotification:
    settings = service.get_settings(user_id, agenda_item_id)
    if settings is None:
        raise HTTPException(status_code=404, detail="No notification settings")
    return settings
