"""Database configuration and session management."""
from __future__ import annotations

import sqlite3
from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from auditkit.config import get_settings
from auditkit.models import Base  # registers every table on the metadata

engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _engine_kwargs(database_url: str) -> dict[str, object]:
    if database_url.startswith("sqlite"):
        settings = get_settings()
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.SQLITE_BUSY_TIMEOUT_SECONDS,
            }
        }
    return {}


def build_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url`` with the store's connection options."""

    return create_engine(database_url, echo=False, **_engine_kwargs(database_url))


def build_sessionmaker(bind: Engine) -> sessionmaker[Session]:
    """Return a session factory configured the way the write path expects."""

    return sessionmaker(
        bind=bind,
        autoflush=False,
        expire_on_commit=False,
    )


def init_engine() -> Engine:
    """Initialise the synchronous SQLAlchemy engine lazily."""

    global engine, SessionLocal
    if engine is None:
        settings = get_settings()
        engine = build_engine(settings.database_url)
        SessionLocal = build_sessionmaker(engine)
    return engine


def get_engine() -> Engine:
    """Return the active SQLAlchemy engine, creating it if necessary."""

    if engine is None:
        return init_engine()
    return engine


def get_sessionmaker() -> sessionmaker[Session]:
    """Return the configured session factory, initialising the engine on demand."""

    if SessionLocal is None:
        init_engine()
    assert SessionLocal is not None  # for type-checkers
    return SessionLocal


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:
    """Ensure SQLite enforces foreign key constraints and lets readers run beside writers."""

    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    # In-memory databases answer "memory" and keep their journal.
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_all(bind: Engine | None = None) -> None:
    """Create all database tables using the shared declarative metadata."""

    Base.metadata.create_all(bind=bind or get_engine())


def close_engine() -> None:
    """Dispose of the SQLAlchemy engine and reset the session factory."""

    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
        engine = None
        SessionLocal = None


def get_db() -> Generator[Session, None, None]:
    """Provide a database session scoped to one request."""

    session = get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "build_engine",
    "build_sessionmaker",
    "create_all",
    "get_db",
    "get_engine",
    "get_sessionmaker",
    "init_engine",
    "close_engine",
]
