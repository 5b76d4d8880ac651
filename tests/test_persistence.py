"""Tests for the SQLite stores: local state units, repositories and the activity log."""

import asyncio
import sqlite3
from datetime import datetime

import pytest

from fakes import FakeActivitySink
from lease_automation.activity import ActivityRecorder, SqliteActivityLog
from lease_automation.local_state import EMAIL_QUEUE, MAIL_CONFIG, LocalStateStore
from lease_automation.models import Automation, EmailTemplate
from lease_automation.repository import SqliteAutomationRepository, SqliteTemplateRepository


# ============================================================================
# Local state units
# ============================================================================

class TestLocalStateStore:

    def test_default_when_absent(self, state):
        assert state.load(EMAIL_QUEUE, []) == []
        assert state.load(MAIL_CONFIG) is None

    def test_save_and_load(self, state):
        state.save(EMAIL_QUEUE, [{"id": "email_1"}])
        assert state.load(EMAIL_QUEUE, []) == [{"id": "email_1"}]

    def test_overwrite(self, state):
        state.save(EMAIL_QUEUE, [{"id": "email_1"}])
        state.save(EMAIL_QUEUE, [])
        assert state.load(EMAIL_QUEUE, ["sentinel"]) == []

    def test_delete(self, state):
        state.save(MAIL_CONFIG, {"host": "x"})
        state.delete(MAIL_CONFIG)
        assert state.load(MAIL_CONFIG) is None
        assert state.names() == []

    def test_file_backed_survives_reopen(self, tmp_path):
        path = tmp_path / "state" / "local_state.db"
        LocalStateStore(path).save(MAIL_CONFIG, {"host": "smtp.example.com"})
        assert LocalStateStore(path).load(MAIL_CONFIG) == {"host": "smtp.example.com"}

    def test_corrupt_unit_treated_as_absent(self, tmp_path, caplog):
        path = tmp_path / "local_state.db"
        store = LocalStateStore(path)
        conn = sqlite3.connect(str(path))
        conn.execute(
            "INSERT INTO local_state (name, payload, updated_at) VALUES (?, ?, ?)",
            (EMAIL_QUEUE, "{not json", ""),
        )
        conn.commit()
        conn.close()
        assert store.load(EMAIL_QUEUE, []) == []
        assert "unreadable" in caplog.text


# ============================================================================
# Automation repository
# ============================================================================

def _automation(automation_id="a-1", owner_id="owner-1", **overrides) -> Automation:
    defaults = dict(
        id=automation_id,
        name="Rent receipt",
        next_execution=datetime(2025, 1, 10, 9, 0),
        frequency="monthly",
        type="receipt",
        owner_id=owner_id,
    )
    defaults.update(overrides)
    return Automation(**defaults)


class TestSqliteAutomationRepository:

    @pytest.fixture
    def repo(self, tmp_path):
        return SqliteAutomationRepository(tmp_path / "records.db")

    @pytest.mark.asyncio
    async def test_create_and_get(self, repo):
        created = await repo.create_automation(_automation(property_id="P-1"))
        assert await repo.get_automation("a-1") == created

    @pytest.mark.asyncio
    async def test_list_scoped_by_owner_and_ordered(self, repo):
        await repo.create_automation(_automation("late", next_execution=datetime(2025, 3, 1)))
        await repo.create_automation(_automation("early", next_execution=datetime(2025, 1, 1)))
        await repo.create_automation(_automation("theirs", owner_id="owner-2"))
        listed = await repo.list_automations("owner-1")
        assert [a.id for a in listed] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_update_persists_schedule(self, repo):
        automation = await repo.create_automation(_automation())
        await repo.update_automation(automation.rescheduled(datetime(2025, 1, 15, 9, 0)))
        stored = await repo.get_automation("a-1")
        assert stored.last_execution == datetime(2025, 1, 15, 9, 0)
        assert stored.next_execution == datetime(2025, 2, 10, 9, 0)

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, repo):
        with pytest.raises(KeyError):
            await repo.update_automation(_automation("ghost"))

    @pytest.mark.asyncio
    async def test_inactive_flag_round_trips(self, repo):
        await repo.create_automation(_automation(active=False))
        assert (await repo.get_automation("a-1")).active is False

    @pytest.mark.asyncio
    async def test_delete(self, repo):
        await repo.create_automation(_automation())
        assert await repo.delete_automation("a-1") is True
        assert await repo.get_automation("a-1") is None
        assert await repo.delete_automation("a-1") is False


# ============================================================================
# Template repository
# ============================================================================

class TestSqliteTemplateRepository:

    @pytest.fixture
    def repo(self, tmp_path):
        return SqliteTemplateRepository(tmp_path / "records.db")

    @pytest.mark.asyncio
    async def test_create_list_update_delete(self, repo):
        template = EmailTemplate(id="tpl-1", name="Reminder", subject="Hi {{tenant_name}}",
                                 content="<p>Body</p>", category="financial")
        await repo.create_template(template)
        assert [t.id for t in await repo.list_templates()] == ["tpl-1"]

        template.subject = "Updated"
        await repo.update_template(template)
        assert (await repo.get_template("tpl-1")).subject == "Updated"

        assert await repo.delete_template("tpl-1") is True
        assert await repo.list_templates() == []

    @pytest.mark.asyncio
    async def test_shares_database_with_automations(self, tmp_path):
        db = tmp_path / "records.db"
        automations = SqliteAutomationRepository(db)
        templates = SqliteTemplateRepository(db)
        await automations.create_automation(_automation())
        await templates.create_template(EmailTemplate(id="t", name="n", subject="s", content="c"))
        assert len(await automations.list_automations("owner-1")) == 1
        assert len(await templates.list_templates()) == 1


# ============================================================================
# Activity log
# ============================================================================

class TestActivity:

    @pytest.mark.asyncio
    async def test_recorded_entries_reach_sink(self):
        sink = FakeActivitySink()
        recorder = ActivityRecorder(sink)
        recorder.record("email_sent", "a-1", to=["ana@example.com"])
        await recorder.flush()
        assert sink.actions == ["email_sent"]
        assert sink.entries[0]["details"] == {"to": ["ana@example.com"]}
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_full_buffer_drops_without_raising(self):
        class StalledSink:
            def __init__(self):
                self.release = asyncio.Event()

            async def add_activity(self, entry):
                await self.release.wait()

        sink = StalledSink()
        recorder = ActivityRecorder(sink, maxsize=2)
        for i in range(5):
            recorder.record("email_sent", f"a-{i}")
        assert recorder.dropped == 3

        sink.release.set()
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_failing_sink_is_logged(self, caplog):
        class BrokenSink:
            async def add_activity(self, entry):
                raise sqlite3.OperationalError("database is locked")

        recorder = ActivityRecorder(BrokenSink())
        recorder.record("email_sent", "a-1")
        await recorder.flush()
        assert "database is locked" in caplog.text
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_without_sink_is_noop(self):
        recorder = ActivityRecorder(None)
        recorder.record("email_sent", "a-1")
        await recorder.flush()
        assert recorder.dropped == 0

    @pytest.mark.asyncio
    async def test_sqlite_log(self, tmp_path):
        log = SqliteActivityLog(tmp_path / "records.db")
        recorder = ActivityRecorder(log)
        recorder.record("document_generated", "a-1", document_id="doc-1")
        recorder.record("email_sent", "a-1")
        recorder.record("email_sent", "a-2")
        await recorder.stop()

        entries = log.get_activities("a-1")
        assert [e["action"] for e in entries] == ["email_sent", "document_generated"]
        assert entries[1]["details"] == {"document_id": "doc-1"}
        assert len(log.get_activities()) == 3
