"""Persisted local state for the delivery core.

A small SQLite-backed unit store: each logical store (mail configuration,
template cache fallback, pending queue, sent log, scheduler stamp) is one
JSON document that is loaded and saved as a whole.

Usage::

    store = LocalStateStore("data/local_state.db")
    queue = store.load(EMAIL_QUEUE, [])
    queue.append({...})
    store.save(EMAIL_QUEUE, queue)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Unit names
# ---------------------------------------------------------------------------

MAIL_CONFIG = "mail_config"
EMAIL_TEMPLATES = "email_templates"
EMAIL_QUEUE = "email_queue"
SENT_EMAILS = "sent_emails"
SCHEDULER = "scheduler"

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS local_state (
    name        TEXT PRIMARY KEY,
    payload     TEXT NOT NULL DEFAULT 'null',     -- JSON document
    updated_at  TEXT NOT NULL DEFAULT ''
);
"""


def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class LocalStateStore:
    """Named JSON documents in a single SQLite table.

    ``":memory:"`` is supported for tests; a single connection is then kept
    open for the lifetime of the store, since every new in-memory
    connection would see an empty database.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._memory_conn: sqlite3.Connection | None = None
        if self.db_path == ":memory:":
            self._memory_conn = sqlite3.connect(":memory:")
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._memory_conn is not None:
            return self._memory_conn
        conn = sqlite3.connect(self.db_path)
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _release(self, conn: sqlite3.Connection) -> None:
        if conn is not self._memory_conn:
            conn.close()

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            self._release(conn)

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def load(self, name: str, default: Any = None) -> Any:
        """Return the stored document for ``name``, or ``default``.

        A corrupt payload is logged and treated as absent.
        """
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT payload FROM local_state WHERE name = ?", (name,)
            ).fetchone()
        finally:
            self._release(conn)
        if row is None:
            return default
        try:
            value = json.loads(row[0])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding unreadable local state unit: %s", name)
            return default
        return default if value is None else value

    def save(self, name: str, value: Any) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO local_state (name, payload, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET
                       payload = excluded.payload,
                       updated_at = excluded.updated_at""",
                (name, json.dumps(value), _now_iso()),
            )
            conn.commit()
        finally:
            self._release(conn)

    def delete(self, name: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM local_state WHERE name = ?", (name,))
            conn.commit()
        finally:
            self._release(conn)

    def names(self) -> list[str]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT name FROM local_state ORDER BY name").fetchall()
        finally:
            self._release(conn)
        return [r[0] for r in rows]

    def close(self) -> None:
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
