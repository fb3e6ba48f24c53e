from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from threading import Lock
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    When the configured path is a directory (e.g. a bind mount Docker created
    in place of a missing file) the journal file goes inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "cwo.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


class EventLog:
    """Operational journal: every deployment phase and failure lands here."""

    def __init__(self, path: str):
        self.path = _resolve_db_path(path)
        self._lock = Lock()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init(self) -> None:
        with self._lock, self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  app TEXT,
                  revision TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_events_app ON events(app);
                """
            )

    def log(self, level: str, message: str, app: str | None = None, revision: str | None = None) -> None:
        with self._lock, self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, app, revision, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), app, revision, message),
            )

    def latest(self, limit: int = 100, app: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if app:
                rows = conn.execute(
                    "SELECT * FROM events WHERE app=? ORDER BY id DESC LIMIT ?", (app, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]


class NullEventLog(EventLog):
    """Journal used when journaling is disabled."""

    def __init__(self) -> None:
        self.path = ""

    def init(self) -> None:
        return None

    def log(self, level: str, message: str, app: str | None = None, revision: str | None = None) -> None:
        return None

    def latest(self, limit: int = 100, app: str | None = None) -> list[dict[str, Any]]:
        return []
