"""Persistent, append-only log of rule and maintenance outcomes."""
from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List

from .core.resilience import with_graceful_degradation

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    text TEXT NOT NULL
)
"""


@dataclass(frozen=True)
class LogEntry:
    created_at: datetime
    text: str


class SqliteEventLog:
    """EventLog stored in a small SQLite database.

    ``append`` never raises: a failing write is reported through
    ``logging`` and dropped.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._ready = False

    def _connect(self) -> sqlite3.Connection:
        if not self._ready:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=5)
        if not self._ready:
            conn.execute(_SCHEMA)
            conn.commit()
            self._ready = True
        return conn

    def append(self, text: str) -> None:
        try:
            with self._lock:
                conn = self._connect()
                try:
                    conn.execute(
                        "INSERT INTO logs (created_at, text) VALUES (?, ?)",
                        (datetime.now().isoformat(timespec="seconds"), text),
                    )
                    conn.commit()
                finally:
                    conn.close()
        except (sqlite3.Error, OSError) as exc:
            logger.error("Could not write event log entry %r: %s", text, exc)

    @with_graceful_degradation(default_return=[], error_message="Could not read event log")
    def recent(self, limit: int = 50) -> List[LogEntry]:
        """Newest entries first; empty if the store cannot be read."""
        with self._lock:
            if not self.path.exists():
                return []
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT created_at, text FROM logs ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            finally:
                conn.close()
        return [LogEntry(datetime.fromisoformat(created), text) for created, text in rows]


class MemoryEventLog:
    """In-memory EventLog, used when no log file is configured and in tests."""

    def __init__(self) -> None:
        self.entries: List[str] = []
        self._lock = threading.Lock()

    def append(self, text: str) -> None:
        with self._lock:
            self.entries.append(text)

    def recent(self, limit: int = 50) -> List[LogEntry]:
        with self._lock:
            newest = list(reversed(self.entries))[:limit]
        now = datetime.now()
        return [LogEntry(now, text) for text in newest]
