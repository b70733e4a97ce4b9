"""
Tests for sync orchestration.

Runs use an in-memory database and a scripted adapter, so every scenario
exercises the real merge policy and event reconciler.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from relsync.credentials import CredentialManager
from relsync.notify import StatusNotifier
from relsync.providers.base import (
    ContactPage,
    ProviderAdapter,
    ProviderError,
    PushResult,
)
from relsync.providers.google import (
    GmailCorrespondents,
    GoogleAdapter,
    GoogleCalendarAdapter,
    GoogleClient,
    GoogleContactsAdapter,
)
from relsync.storage.db import DatabaseError, JobStatus, SyncDatabase
from relsync.sync.orchestrator import (
    SyncOrchestrator,
    SyncStats,
    event_from_row,
)
from relsync.sync.record import ContactRecord, EventRecord, SourceMetadata, utcnow

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class ScriptedAdapter(ProviderAdapter):
    """Adapter serving fixed pages and events, recording pushes."""

    name = "file"
    supports_contacts = True
    supports_calendar = True

    def __init__(
        self,
        pages=None,
        events=None,
        contact_error=None,
        event_error=None,
        push_error=None,
    ):
        self.pages = pages if pages is not None else [ContactPage()]
        self.events = events or []
        self.contact_error = contact_error
        self.event_error = event_error
        self.push_error = push_error
        self.created = []
        self.updated = []
        self.cursors = []

    def fetch_contacts(self, token, page_cursor=None):
        self.cursors.append(page_cursor)
        if self.contact_error:
            raise self.contact_error
        return self.pages[int(page_cursor) if page_cursor else 0]

    def fetch_events(self, token):
        if self.event_error:
            raise self.event_error
        return list(self.events)

    def create_event(self, token, event):
        if self.push_error:
            raise self.push_error
        self.created.append(event)
        return PushResult(external_id=f"fake:{len(self.created)}", etag='"1"')

    def update_event(self, token, external_id, event):
        if self.push_error:
            raise self.push_error
        self.updated.append((external_id, event))
        return PushResult(external_id=external_id, etag='"2"')


def contact(name, email=None, external_id=None, **kwargs):
    return ContactRecord(
        name=name,
        email=email,
        external_id=external_id,
        metadata=SourceMetadata(source="file"),
        **kwargs,
    )


@pytest.fixture
def db():
    database = SyncDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def connection_id(db):
    return db.create_connection("user-1", "file", access_token="token")


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def make_orchestrator(db, notifications):
    def factory(adapter):
        notifier = StatusNotifier()
        notifier.subscribe(
            "user-1", lambda channel, phase, payload: notifications.append(phase)
        )
        return SyncOrchestrator(
            db,
            notifier=notifier,
            credentials=CredentialManager(db, {}),
            adapter_factory=lambda connection, settings: adapter,
        )

    return factory


def run(db, orchestrator, connection_id, direction="both"):
    job_id = db.create_sync_job("user-1", connection_id, "file", direction)
    return orchestrator.run(job_id)


class TestSyncStats:
    """Tests for counters and the bounded error log."""

    def test_error_log_is_capped(self):
        stats = SyncStats(error_log_limit=2)
        for i in range(5):
            stats.record_error(f"e{i}")
        assert stats.errors == 5
        assert stats.error_log == ["e0", "e1"]

    def test_counters_match_job_columns(self):
        stats = SyncStats(total=3, created=2)
        counters = stats.counters()
        assert counters["total"] == 3
        assert counters["created"] == 2
        assert "error_log" not in counters


class TestContactImport:
    """Tests for the contact import path."""

    def test_creates_entities_and_completes(
        self, db, connection_id, make_orchestrator, notifications
    ):
        adapter = ScriptedAdapter(
            pages=[
                ContactPage(
                    records=[
                        contact("Jane Smith", "jane@x.com", "f1"),
                        contact("Bob", "bob@x.com", "f2"),
                    ]
                )
            ]
        )

        result = run(db, make_orchestrator(adapter), connection_id, "import")

        assert result.succeeded
        assert result.stats.total == 2
        assert result.stats.created == 2
        job = db.get_sync_job(result.job_id)
        assert job["status"] == "completed"
        assert job["created"] == 2
        assert job["attempts"] == 1
        connection = db.get_connection(connection_id)
        assert connection["status"] == "connected"
        assert connection["last_synced_at"] is not None
        assert notifications == ["started", "completed"]

    def test_rerun_is_idempotent(self, db, connection_id, make_orchestrator):
        records = [
            contact("Jane Smith", "jane@x.com", "f1", phone="555-123-4567"),
            contact("Bob", "bob@x.com", "f2"),
        ]
        adapter = ScriptedAdapter(pages=[ContactPage(records=records)])
        orchestrator = make_orchestrator(adapter)

        run(db, orchestrator, connection_id, "import")
        before = {
            e["id"]: (e["name"], e["metadata"], len(db.list_identifiers(e["id"])))
            for e in db.list_entities("user-1")
        }
        second = run(db, orchestrator, connection_id, "import")

        after = {
            e["id"]: (e["name"], e["metadata"], len(db.list_identifiers(e["id"])))
            for e in db.list_entities("user-1")
        }
        assert after == before
        assert second.stats.created == 0
        assert second.stats.merged == 2

    def test_abbreviated_name_upgraded_across_runs(
        self, db, connection_id, make_orchestrator
    ):
        first = ScriptedAdapter(
            pages=[ContactPage(records=[contact("Jane S.", "jane@x.com")])]
        )
        second = ScriptedAdapter(
            pages=[
                ContactPage(
                    records=[contact("Jane Smith", "JANE@x.com", phone="5551234567")]
                )
            ]
        )

        run(db, make_orchestrator(first), connection_id, "import")
        result = run(db, make_orchestrator(second), connection_id, "import")

        entities = db.list_entities("user-1")
        assert len(entities) == 1
        assert entities[0]["name"] == "Jane Smith"
        assert len(db.list_identifiers(entities[0]["id"], "phone")) == 1
        assert result.stats.merged == 1

    def test_nameless_records_are_skipped(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(
            pages=[
                ContactPage(
                    records=[contact(None, "x@y.com"), contact("  ", "z@y.com")]
                )
            ]
        )
        result = run(db, make_orchestrator(adapter), connection_id, "import")
        assert result.succeeded
        assert result.stats.skipped == 2
        assert db.count_entities("user-1") == 0

    def test_follows_page_cursors(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(
            pages=[
                ContactPage(records=[contact("A")], next_cursor="1"),
                ContactPage(records=[contact("B")], next_cursor="2"),
                ContactPage(records=[contact("C")]),
            ]
        )
        result = run(db, make_orchestrator(adapter), connection_id, "import")
        assert adapter.cursors == [None, "1", "2"]
        assert result.stats.created == 3

    def test_repeated_cursor_stops_paging(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(
            pages=[
                ContactPage(records=[contact("A")], next_cursor="1"),
                ContactPage(records=[contact("B")], next_cursor="1"),
            ]
        )
        result = run(db, make_orchestrator(adapter), connection_id, "import")
        assert adapter.cursors == [None, "1"]
        assert result.stats.created == 2

    def test_feed_errors_are_logged(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(
            pages=[ContactPage(records=[contact("A")], errors=["gmail: forbidden"])]
        )
        result = run(db, make_orchestrator(adapter), connection_id, "import")
        assert result.succeeded
        assert result.stats.errors == 0
        assert db.get_sync_job(result.job_id)["error_log"] == ["gmail: forbidden"]

    def test_storage_error_counts_per_record(
        self, db, connection_id, make_orchestrator
    ):
        adapter = ScriptedAdapter(
            pages=[ContactPage(records=[contact("A"), contact("B")])]
        )
        orchestrator = make_orchestrator(adapter)
        real_apply = orchestrator.merge_policy.apply

        def flaky(owner_id, record):
            if record.name == "A":
                raise sqlite3.OperationalError("database is locked")
            return real_apply(owner_id, record)

        with patch.object(orchestrator.merge_policy, "apply", side_effect=flaky):
            result = run(db, orchestrator, connection_id, "import")

        assert result.succeeded
        assert result.stats.errors == 1
        assert result.stats.created == 1
        assert "database is locked" in result.stats.error_log[0]


class TestEventSync:
    """Tests for event import and export."""

    def test_import_events(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(
            pages=[ContactPage()],
            events=[EventRecord(title="Standup", starts_at=START, external_id="e1")],
        )
        result = run(db, make_orchestrator(adapter), connection_id, "import")
        events = db.list_events("user-1")
        assert result.stats.created == 1
        assert events[0]["sync_status"] == "synced"
        assert adapter.created == []

    def test_missing_row_counts_per_record(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(
            pages=[ContactPage()],
            events=[
                EventRecord(title="Gone", starts_at=START, external_id="e1"),
                EventRecord(title="Standup", starts_at=START, external_id="e2"),
            ],
        )
        orchestrator = make_orchestrator(adapter)
        real_reconcile = orchestrator.event_reconciler.reconcile

        def vanishing(user_id, connection, record):
            if record.title == "Gone":
                raise DatabaseError("Event 7 not found")
            return real_reconcile(user_id, connection, record)

        with patch.object(
            orchestrator.event_reconciler, "reconcile", side_effect=vanishing
        ):
            result = run(db, orchestrator, connection_id, "import")

        assert result.succeeded
        assert result.stats.errors == 1
        assert result.stats.created == 1
        assert "Event 7 not found" in result.stats.error_log[0]

    def test_export_creates_and_updates(self, db, connection_id, make_orchestrator):
        local = db.create_event("user-1", "Lunch", START)
        edited = db.create_event(
            "user-1",
            "Review",
            START + timedelta(days=1),
            external_id="ext-1",
            connection_id=connection_id,
            sync_status="synced",
        )
        db.update_event(edited, title="Review (moved)")
        adapter = ScriptedAdapter()

        result = run(db, make_orchestrator(adapter), connection_id, "export")

        assert result.succeeded
        assert result.stats.exported == 2
        assert [e.title for e in adapter.created] == ["Lunch"]
        assert [(x, e.title) for x, e in adapter.updated] == [
            ("ext-1", "Review (moved)")
        ]
        assert db.get_event(local)["external_id"] == "fake:1"
        assert db.get_event(local)["sync_status"] == "synced"
        assert db.get_event(edited)["sync_metadata"]["etag"] == '"2"'
        assert db.list_events_pending_sync("user-1", connection_id) == []

    def test_export_only_skips_contacts(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(pages=[ContactPage(records=[contact("A")])])
        run(db, make_orchestrator(adapter), connection_id, "export")
        assert adapter.cursors == []
        assert db.count_entities("user-1") == 0

    def test_export_failure_is_counted(self, db, connection_id, make_orchestrator):
        db.create_event("user-1", "Lunch", START)
        adapter = ScriptedAdapter(push_error=ProviderError("quota", status=403))

        result = run(db, make_orchestrator(adapter), connection_id, "both")

        assert result.succeeded
        assert result.stats.export_failed == 1
        assert result.stats.exported == 0
        assert db.list_events("user-1")[0]["sync_status"] == "local_only"

    def test_imported_events_are_not_exported_back(
        self, db, connection_id, make_orchestrator
    ):
        adapter = ScriptedAdapter(
            events=[EventRecord(title="Standup", starts_at=START, external_id="e1")]
        )
        result = run(db, make_orchestrator(adapter), connection_id, "both")
        assert result.stats.exported == 0
        assert adapter.created == []
        assert adapter.updated == []

    def test_event_from_row(self, db):
        event_id = db.create_event(
            "user-1",
            "Lunch",
            START,
            sync_metadata={"etag": '"x"'},
            all_day=True,
        )
        record = event_from_row(db.get_event(event_id))
        assert record.title == "Lunch"
        assert record.starts_at == START
        assert record.all_day is True
        assert record.etag == '"x"'


class TestGoogleSources:
    """Runs through the aggregated Google adapter with stubbed services."""

    @staticmethod
    def google_adapter(gmail_error):
        people, calendar, gmail = MagicMock(), MagicMock(), MagicMock()
        connections = people.people.return_value.connections.return_value
        connections.list.return_value.execute.return_value = {
            "connections": [
                {
                    "resourceName": "people/c1",
                    "names": [{"displayName": "Jane Smith"}],
                    "emailAddresses": [{"value": "jane@example.com"}],
                }
            ]
        }
        people.otherContacts.return_value.list.return_value.execute.return_value = {}
        calendar.events.return_value.list.return_value.execute.return_value = {
            "items": []
        }
        messages = gmail.users.return_value.messages.return_value
        messages.list.return_value.execute.side_effect = gmail_error

        services = {"people": people, "calendar": calendar, "gmail": gmail}
        client = GoogleClient(
            service_factory=lambda api, version, token: services[api],
            max_retries=2,
            initial_retry_delay=0,
        )
        adapter = GoogleAdapter(
            contacts=GoogleContactsAdapter(client=client),
            calendar=GoogleCalendarAdapter(client=client),
            gmail=GmailCorrespondents(client=client),
        )
        return adapter, calendar

    @patch("time.sleep")
    def test_unreachable_feed_does_not_fail_run(
        self, mock_sleep, db, connection_id, make_orchestrator
    ):
        adapter, calendar = self.google_adapter(
            TimeoutError("timed out connecting to gmail.googleapis.com")
        )

        result = run(db, make_orchestrator(adapter), connection_id, "import")

        assert result.succeeded
        assert result.stats.created == 1
        assert db.count_entities("user-1") == 1
        error_log = db.get_sync_job(result.job_id)["error_log"]
        assert any(
            entry.startswith("gmail:") and "timed out" in entry for entry in error_log
        )
        # Attendees and events share one calendar listing
        assert calendar.events.return_value.list.call_count == 1


class TestRunFailures:
    """Tests for runs that fail or do nothing."""

    def test_all_sources_failed(
        self, db, connection_id, make_orchestrator, notifications
    ):
        adapter = ScriptedAdapter(
            contact_error=ProviderError("contacts down"),
            event_error=ProviderError("calendar down"),
        )

        result = run(db, make_orchestrator(adapter), connection_id, "import")

        assert result.status is JobStatus.FAILED
        assert "contacts down" in result.error
        assert "calendar down" in result.error
        assert db.get_sync_job(result.job_id)["status"] == "failed"
        connection = db.get_connection(connection_id)
        assert connection["status"] == "error"
        assert "contacts down" in connection["sync_error"]
        assert notifications == ["started", "failed"]

    def test_one_source_failed_still_completes(
        self, db, connection_id, make_orchestrator
    ):
        adapter = ScriptedAdapter(
            contact_error=ProviderError("contacts down"),
            events=[EventRecord(title="Standup", starts_at=START)],
        )
        result = run(db, make_orchestrator(adapter), connection_id, "import")
        assert result.succeeded
        assert result.stats.created == 1
        assert any("contacts down" in e for e in result.stats.error_log)

    def test_missing_job(self, make_orchestrator):
        result = make_orchestrator(ScriptedAdapter()).run(999)
        assert result.status is JobStatus.FAILED
        assert result.error == "job not found"

    def test_finished_job_is_noop(self, db, connection_id, make_orchestrator):
        adapter = ScriptedAdapter(pages=[ContactPage(records=[contact("A")])])
        orchestrator = make_orchestrator(adapter)
        first = run(db, orchestrator, connection_id, "import")

        again = orchestrator.run(first.job_id)

        assert again.noop is True
        assert again.status is JobStatus.COMPLETED
        assert db.get_sync_job(first.job_id)["attempts"] == 1

    def test_disconnected_connection(self, db, connection_id, make_orchestrator):
        db.set_connection_status(connection_id, "disconnected")
        result = run(db, make_orchestrator(ScriptedAdapter()), connection_id)
        assert result.status is JobStatus.FAILED
        assert "disconnected" in result.error
        assert db.get_connection(connection_id)["status"] == "disconnected"

    def test_expired_token_without_refresh(self, db, make_orchestrator):
        connection_id = db.create_connection(
            "user-1",
            "file",
            access_token="old",
            token_expires_at=utcnow() - timedelta(hours=1),
        )
        adapter = ScriptedAdapter(pages=[ContactPage(records=[contact("A")])])

        result = run(db, make_orchestrator(adapter), connection_id, "import")

        assert result.status is JobStatus.FAILED
        assert adapter.cursors == []
        assert db.get_connection(connection_id)["status"] == "error"

    def test_unexpected_exception_fails_run(self, db, connection_id):
        def broken_factory(connection, settings):
            raise RuntimeError("adapter exploded")

        orchestrator = SyncOrchestrator(
            db,
            credentials=CredentialManager(db, {}),
            adapter_factory=broken_factory,
        )
        result = run(db, orchestrator, connection_id)
        assert result.status is JobStatus.FAILED
        assert "RuntimeError: adapter exploded" in result.error
        assert db.get_sync_job(result.job_id)["status"] == "failed"
