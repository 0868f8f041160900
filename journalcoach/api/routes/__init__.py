"""API route modules."""

from journalcoach.api.routes import agenda, chat, coach_jobs, cron, notifications, tool_jobs

__all__ = ["agenda", "chat", "coach_jobs", "cron", "notifications", "tool_jobs"]
