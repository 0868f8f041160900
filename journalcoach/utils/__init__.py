"""Shared helpers for journalcoach."""
