"""Database connection management for journalcoach.

Provides synchronous database access using SQLAlchemy. Supports SQLite
for development and single-node deployments with a PostgreSQL path for
production (the claim primitive is a plain conditional UPDATE and works
unchanged on either).

Usage:
    from journalcoach.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from journalcoach.db.models import Base

logger = logging.getLogger(__name__)


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. JOURNALCOACH_DB_PATH (converted to sqlite URL)
    3. sqlite:///<data dir>/journalcoach.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("JOURNALCOACH_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from journalcoach.utils.paths import get_default_db_path
    return f"sqlite:///{get_default_db_path()}"


def build_engine(database_url: str) -> Engine:
    """Create an engine with the SQLite pragmas the pipeline relies on.

    Args:
        database_url: SQLAlchemy database URL.

    Returns:
        Configured Engine.
    """
    is_sqlite = database_url.startswith("sqlite")
    new_engine = create_engine(
        database_url,
        # timeout: concurrent claimers wait for the writer lock instead of failing
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
        echo=os.environ.get("SQL_ECHO", "").lower() == "true",
    )

    if is_sqlite:
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            """Configure SQLite pragmas for correctness and concurrency.

            Enables:
            - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
            - journal_mode=WAL: Concurrent readers + a single writer, so
              claimers and request handlers do not block each other's reads.
            """
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in database_url:
                cursor.execute("PRAGMA journal_mode=WAL;")
                cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

    return new_engine


# Engine creation
DATABASE_URL = get_database_url()
engine = build_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


# Dependency functions for FastAPI


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for request handlers.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            message = db.query(Message).first()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Initialization functions


def init_db(bind: Engine | None = None) -> None:
    """Create all tables that do not exist yet.

    Args:
        bind: Engine to initialize (defaults to the module engine).
    """
    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("Database initialized at %s", target.url.render_as_string(hide_password=True))
