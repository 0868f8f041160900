"""File path resolution using platformdirs.

Set JOURNALCOACH_HOME to pin all state under one directory (containers,
tests). Otherwise paths use the platform user data directory:
  macOS: ~/Library/Application Support/journalcoach/
  Linux: ~/.local/share/journalcoach/
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "journalcoach"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB)."""
    override = os.environ.get("JOURNALCOACH_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "journalcoach.db"
