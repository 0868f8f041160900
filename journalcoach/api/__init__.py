"""FastAPI application for journalcoach."""
