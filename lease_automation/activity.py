"""
Lease Automation -- Activity (audit) log

Best-effort side channel: callers hand entries to ``ActivityRecorder``,
which buffers them in a bounded ``asyncio.Queue`` and writes them to an
``ActivitySink`` from a background task.  A full buffer or a failing sink
is reported in the logs only; ``record`` never blocks and never raises.

``SqliteActivityLog`` is the reference sink (table ``activity_log``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .collaborators import ActivitySink

logger = logging.getLogger(__name__)

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS activity_log (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    action       TEXT NOT NULL,
    entity_type  TEXT NOT NULL DEFAULT 'automation',
    entity_id    TEXT NOT NULL DEFAULT '',
    actor        TEXT NOT NULL DEFAULT 'system',
    details      TEXT NOT NULL DEFAULT '{}',
    timestamp    TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_activity_entity ON activity_log(entity_id);
"""


def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class ActivityRecorder:
    """Bounded fire-and-forget buffer in front of an activity sink."""

    def __init__(self, sink: Optional[ActivitySink], maxsize: int = 256):
        self.sink = sink
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None
        self.dropped = 0

    def record(
        self,
        action: str,
        entity_id: str = "",
        entity_type: str = "automation",
        **details: Any,
    ) -> None:
        entry = {
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
            "timestamp": _now_iso(),
        }
        if self.sink is None:
            logger.debug("Activity %s %s: %s", action, entity_id, details)
            return
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Activity buffer full, dropping %s for %s", action, entity_id)
            return
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; entries wait in the buffer for the next record().
            return
        self._task = loop.create_task(self._drain(), name="activity-recorder")

    async def _drain(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self.sink.add_activity(entry)
            except Exception as exc:
                logger.warning("Activity sink rejected %s: %s", entry["action"], exc)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every buffered entry has been handed to the sink."""
        if self._queue.empty():
            return
        self._ensure_worker()
        await self._queue.join()

    async def stop(self) -> None:
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class SqliteActivityLog:
    """Append-only activity table."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _insert(self, entry: dict[str, Any]) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO activity_log (action, entity_type, entity_id, actor, details, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entry["action"],
                    entry.get("entity_type", "automation"),
                    entry.get("entity_id", ""),
                    entry.get("actor", "system"),
                    json.dumps(entry.get("details") or {}, default=str),
                    entry.get("timestamp") or _now_iso(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    async def add_activity(self, entry: dict[str, Any]) -> None:
        await asyncio.to_thread(self._insert, entry)

    def get_activities(self, entity_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
        """Activity entries, newest first."""
        conn = self._get_conn()
        try:
            if entity_id:
                rows = conn.execute(
                    """SELECT * FROM activity_log WHERE entity_id = ?
                       ORDER BY id DESC LIMIT ?""",
                    (entity_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
        finally:
            conn.close()
        activities = []
        for r in rows:
            item = dict(r)
            item["details"] = json.loads(item["details"] or "{}")
            activities.append(item)
        return activities
