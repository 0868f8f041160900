"""Read-only feed of recent journal entries used as coach context."""

from typing import Protocol

from sqlalchemy.orm import Session

from journalcoach.db.models import JournalEntry
from journalcoach.services.prompts import JournalEntryContext


class JournalFeed(Protocol):
    def recent_entries(self, user_id: str, limit: int) -> list[JournalEntryContext]:
        ...


class DatabaseJournalFeed:
    """JournalFeed reading the journal_entries table, newest first."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def recent_entries(self, user_id: str, limit: int) -> list[JournalEntryContext]:
        rows = (
            self.db.query(JournalEntry)
            .filter(JournalEntry.user_id == user_id)
            .order_by(JournalEntry.date.desc())
            .limit(limit)
            .all()
        )
        return [
            JournalEntryContext(date=row.date, content=row.content, mood=row.mood)
            for row in rows
        ]
