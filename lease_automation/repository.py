"""
Lease Automation -- SQLite record persistence

Reference implementations of the automation and template persistence
collaborators.  Both share one database file; every public coroutine runs
its blocking SQLite work in a worker thread.

Database schema:
    automations      - recurring tasks, scoped by owner_id
    email_templates  - subject/body templates
"""

from __future__ import annotations

import asyncio
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .models import Automation, EmailTemplate

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS automations (
    id                    TEXT PRIMARY KEY,
    owner_id              TEXT NOT NULL DEFAULT '',
    name                  TEXT NOT NULL DEFAULT '',
    description           TEXT NOT NULL DEFAULT '',
    type                  TEXT NOT NULL DEFAULT 'reminder',
    frequency             TEXT NOT NULL DEFAULT 'monthly',
    next_execution        TEXT NOT NULL,
    last_execution        TEXT,
    active                INTEGER NOT NULL DEFAULT 1,
    property_id           TEXT,
    email_template_id     TEXT,
    document_template_id  TEXT,
    execution_time        TEXT NOT NULL DEFAULT '09:00',
    created_at            TEXT NOT NULL DEFAULT '',
    updated_at            TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS email_templates (
    id                    TEXT PRIMARY KEY,
    name                  TEXT NOT NULL DEFAULT '',
    subject               TEXT NOT NULL DEFAULT '',
    content               TEXT NOT NULL DEFAULT '',
    category              TEXT NOT NULL DEFAULT 'other',
    document_template_id  TEXT,
    created_at            TEXT NOT NULL DEFAULT '',
    updated_at            TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_automation_owner ON automations(owner_id);
CREATE INDEX IF NOT EXISTS idx_automation_next ON automations(active, next_execution);
CREATE INDEX IF NOT EXISTS idx_template_category ON email_templates(category);
"""

_AUTOMATION_COLUMNS = [
    "id", "owner_id", "name", "description", "type", "frequency",
    "next_execution", "last_execution", "active", "property_id",
    "email_template_id", "document_template_id", "execution_time",
]


def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _automation_to_row(automation: Automation) -> dict[str, Any]:
    row = automation.to_dict()
    row["active"] = 1 if automation.active else 0
    return {c: row[c] for c in _AUTOMATION_COLUMNS}


def _row_to_automation(row: sqlite3.Row) -> Automation:
    data = dict(row)
    data["active"] = bool(data.get("active"))
    return Automation.from_dict(data)


class _SqliteStore:
    """Connection helpers shared by the repositories."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()


# ===========================================================================
# Automations
# ===========================================================================

class SqliteAutomationRepository(_SqliteStore):
    """Owner-scoped automation persistence."""

    def _list(self, owner_id: str) -> list[Automation]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM automations WHERE owner_id = ? ORDER BY next_execution",
                (owner_id,),
            ).fetchall()
            return [_row_to_automation(r) for r in rows]
        finally:
            conn.close()

    def _get(self, automation_id: str) -> Optional[Automation]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM automations WHERE id = ?", (automation_id,)
            ).fetchone()
            return _row_to_automation(row) if row else None
        finally:
            conn.close()

    def _insert(self, automation: Automation) -> Automation:
        if not automation.id:
            automation.id = str(uuid.uuid4())
        row = _automation_to_row(automation)
        row["created_at"] = row["updated_at"] = _now_iso()
        columns = list(row.keys())
        conn = self._get_conn()
        try:
            conn.execute(
                f"INSERT INTO automations ({', '.join(columns)}) "
                f"VALUES ({', '.join(['?'] * len(columns))})",
                [row[c] for c in columns],
            )
            conn.commit()
        finally:
            conn.close()
        return automation

    def _update(self, automation: Automation) -> Automation:
        row = _automation_to_row(automation)
        row["updated_at"] = _now_iso()
        assignments = ", ".join(f"{c} = ?" for c in row if c != "id")
        conn = self._get_conn()
        try:
            result = conn.execute(
                f"UPDATE automations SET {assignments} WHERE id = ?",
                [row[c] for c in row if c != "id"] + [automation.id],
            )
            conn.commit()
        finally:
            conn.close()
        if result.rowcount == 0:
            raise KeyError(f"Automation not found: {automation.id}")
        return automation

    def _delete(self, automation_id: str) -> bool:
        conn = self._get_conn()
        try:
            result = conn.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
            conn.commit()
            return result.rowcount > 0
        finally:
            conn.close()

    async def list_automations(self, owner_id: str) -> list[Automation]:
        return await asyncio.to_thread(self._list, owner_id)

    async def get_automation(self, automation_id: str) -> Optional[Automation]:
        return await asyncio.to_thread(self._get, automation_id)

    async def create_automation(self, automation: Automation) -> Automation:
        return await asyncio.to_thread(self._insert, automation)

    async def update_automation(self, automation: Automation) -> Automation:
        return await asyncio.to_thread(self._update, automation)

    async def delete_automation(self, automation_id: str) -> bool:
        return await asyncio.to_thread(self._delete, automation_id)


# ===========================================================================
# Templates
# ===========================================================================

class SqliteTemplateRepository(_SqliteStore):

    def _list(self) -> list[EmailTemplate]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM email_templates ORDER BY created_at DESC, name"
            ).fetchall()
            return [EmailTemplate.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()

    def _get(self, template_id: str) -> Optional[EmailTemplate]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM email_templates WHERE id = ?", (template_id,)
            ).fetchone()
            return EmailTemplate.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _upsert(self, template: EmailTemplate) -> EmailTemplate:
        if not template.id:
            template.id = str(uuid.uuid4())
        now = _now_iso()
        template.created_at = template.created_at or now
        template.updated_at = template.updated_at or now
        row = template.to_dict()
        columns = list(row.keys())
        conn = self._get_conn()
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO email_templates ({', '.join(columns)}) "
                f"VALUES ({', '.join(['?'] * len(columns))})",
                [row[c] for c in columns],
            )
            conn.commit()
        finally:
            conn.close()
        return template

    def _delete(self, template_id: str) -> bool:
        conn = self._get_conn()
        try:
            result = conn.execute("DELETE FROM email_templates WHERE id = ?", (template_id,))
            conn.commit()
            return result.rowcount > 0
        finally:
            conn.close()

    async def list_templates(self) -> list[EmailTemplate]:
        return await asyncio.to_thread(self._list)

    async def get_template(self, template_id: str) -> Optional[EmailTemplate]:
        return await asyncio.to_thread(self._get, template_id)

    async def create_template(self, template: EmailTemplate) -> EmailTemplate:
        return await asyncio.to_thread(self._upsert, template)

    async def update_template(self, template: EmailTemplate) -> EmailTemplate:
        return await asyncio.to_thread(self._upsert, template)

    async def delete_template(self, template_id: str) -> bool:
        return await asyncio.to_thread(self._delete, template_id)
