"""Command-line interface for journalcoach."""
