"""SQLite persistence context shared by all stores."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from .constants import DATABASE_PATH
from .errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS reputations (
    kind TEXT NOT NULL,
    key TEXT NOT NULL,
    score REAL NOT NULL,
    observations INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT,
    PRIMARY KEY (kind, key)
);

CREATE TABLE IF NOT EXISTS feature_weights (
    feature TEXT PRIMARY KEY,
    weight REAL NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS feedback (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    email_id TEXT NOT NULL,
    message_id TEXT,
    sender TEXT,
    sender_domain TEXT,
    subject TEXT,
    type TEXT NOT NULL,
    priority TEXT NOT NULL,
    detection_result INTEGER NOT NULL,
    confidence REAL NOT NULL,
    features_json TEXT,
    comment TEXT,
    timestamp TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    processed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_feedback_user ON feedback(user_id);
CREATE INDEX IF NOT EXISTS idx_feedback_email ON feedback(email_id);
CREATE INDEX IF NOT EXISTS idx_feedback_sender ON feedback(sender);

CREATE TABLE IF NOT EXISTS verification_requests (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    email_id TEXT NOT NULL,
    message_id TEXT,
    sender TEXT,
    sender_domain TEXT,
    subject TEXT,
    confidence REAL NOT NULL,
    status TEXT NOT NULL,
    generated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    responded_at TEXT,
    user_response TEXT,
    request_sent_count INTEGER NOT NULL DEFAULT 0,
    token TEXT NOT NULL UNIQUE
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_verification_one_pending
    ON verification_requests(user_id, email_id) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_verification_expiry
    ON verification_requests(status, expires_at);

CREATE TABLE IF NOT EXISTS detections (
    user_id TEXT NOT NULL,
    email_id TEXT NOT NULL,
    sender TEXT,
    sender_domain TEXT,
    subject TEXT,
    message_id TEXT,
    confidence REAL NOT NULL,
    is_newsletter INTEGER NOT NULL,
    features_json TEXT,
    verified INTEGER NOT NULL DEFAULT 0,
    detected_at TEXT NOT NULL,
    PRIMARY KEY (user_id, email_id)
);

CREATE TABLE IF NOT EXISTS user_feedback_lists (
    user_id TEXT NOT NULL,
    list TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (user_id, list, value)
);
"""


def to_timestamp(value: datetime | None) -> str | None:
    """Serialise an aware datetime so that string order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class Database:
    """Owns the SQLite connection; every store call goes through :meth:`run`.

    Blocking sqlite3 work runs in a worker thread. One re-entrant lock
    serialises all access, so a function passed to :meth:`run` executes as a
    single transaction that no other store call can interleave with.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = Path(db_path or DATABASE_PATH)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    # --- lifecycle ---

    def _open(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
                self._conn.executescript(_CREATE_TABLES_SQL)
            except sqlite3.Error as exc:
                raise StorageError(f"Could not open database {self.db_path}: {exc}") from exc
            logger.debug("Opened database %s", self.db_path)

    def _close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("Closed database %s", self.db_path)

    async def open(self) -> Database:
        await asyncio.to_thread(self._open)
        return self

    async def close(self) -> None:
        await asyncio.to_thread(self._close)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # --- execution ---

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            if self._conn is None:
                raise StorageError("Database is not open")
            try:
                with self._conn:
                    return fn(self._conn, *args)
            except sqlite3.Error as exc:
                raise StorageError(f"{getattr(fn, '__name__', 'query')} failed: {exc}") from exc

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(connection, *args)`` in one transaction off the event loop."""
        return await asyncio.to_thread(self._call, fn, *args)

    async def clear(self) -> None:
        """Drop and recreate all tables."""

        def _clear(conn: sqlite3.Connection) -> None:
            conn.executescript(
                "DROP TABLE IF EXISTS reputations;"
                "DROP TABLE IF EXISTS feature_weights;"
                "DROP TABLE IF EXISTS feedback;"
                "DROP TABLE IF EXISTS verification_requests;"
                "DROP TABLE IF EXISTS detections;"
                "DROP TABLE IF EXISTS user_feedback_lists;"
            )
            conn.executescript(_CREATE_TABLES_SQL)

        await self.run(_clear)

    # --- context manager ---

    async def __aenter__(self) -> Database:
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.close()
