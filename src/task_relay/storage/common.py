"""Time and SQLite engine helpers shared by the task store."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# Run on every new connection; the daemon, the web app and the CLI share one file.
CONNECTION_PRAGMAS = ("journal_mode = WAL", "foreign_keys = ON")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse a worker-reported timestamp; a trailing ``Z`` or no offset means UTC."""

    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    return to_utc_aware_datetime(datetime.fromisoformat(text))


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC, the form SQLite stores and hands back."""

    return value if value.tzinfo is None else value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Unpooled engine for the task store with WAL, foreign keys and bounded lock waits."""

    busy_timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": max(1.0, busy_timeout_ms / 1000)},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in (*CONNECTION_PRAGMAS, f"busy_timeout = {busy_timeout_ms}"):
                cursor.execute(f"PRAGMA {pragma}")
        finally:
            cursor.close()

    return engine
