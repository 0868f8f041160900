"""Before/after notification settings for agenda items."""

import logging

from sqlalchemy.orm import Session

from journalcoach.db.models import AgendaItem, EventNotification
from journalcoach.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class AgendaNotificationService:
    """Reads and writes the EventNotification row of a user's agenda item."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_item(self, user_id: str, agenda_item_id: str) -> AgendaItem:
        item = self.db.get(AgendaItem, agenda_item_id)
        if item is None or item.user_id != user_id:
            raise NotFoundError("Agenda item", agenda_item_id)
        return item

    def get_settings(self, user_id: str, agenda_item_id: str) -> EventNotification | None:
        return self.get_item(user_id, agenda_item_id).notification

    def configure(
        self,
        user_id: str,
        agenda_item_id: str,
        notify_before: bool,
        minutes_before: int | None,
        notify_after: bool,
        minutes_after: int | None,
    ) -> EventNotification:
        """Create or update the settings for an agenda item.

        A side whose offset changes, or that is switched back on, gets its
        sent flag and cached message reset so it fires again.

        Raises:
            NotFoundError: If the item does not exist or is not the user's.
            ValidationError: If an enabled side has no offset.
        """
        if notify_before and minutes_before is None:
            raise ValidationError("minutes_before is required when notify_before is set")
        if notify_after and minutes_after is None:
            raise ValidationError("minutes_after is required when notify_after is set")

        item = self.get_item(user_id, agenda_item_id)
        settings = item.notification
        if settings is None:
            settings = EventNotification(agenda_item_id=item.id, user_id=user_id)
            self.db.add(settings)

        if settings.minutes_before != minutes_before or (
            notify_before and not settings.notify_before
        ):
            settings.before_notification_sent = False
            settings.before_sent_at = None
            settings.before_message = None
        if settings.minutes_after != minutes_after or (
            notify_after and not settings.notify_after
        ):
            settings.after_notification_sent = False
            settings.after_sent_at = None
            settings.after_message = None

        settings.notify_before = notify_before
        settings.minutes_before = minutes_before
        settings.notify_after = notify_after
        settings.minutes_after = minutes_after
        self.db.commit()
        self.db.refresh(settings)
        logger.info("Updated event notifications for agenda item %s", item.id)
        return settings
