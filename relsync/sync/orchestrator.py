"""
Sync orchestration for one connection and one run.

A run:
1. Refreshes the connection's credentials
2. Fetches every page of contacts and feeds each record through the
   merge policy
3. Imports calendar events through the event reconciler
4. Exports locally pending events back to the provider
5. Persists the counters on the sync job record and notifies subscribers

Per-record failures are counted and logged without stopping the run. A
run fails only when credentials cannot be made valid, every source failed
without producing anything, or an unexpected exception escapes.
"""

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from relsync.credentials import CredentialError, CredentialManager
from relsync.notify import StatusNotifier, SyncPhase
from relsync.providers import ProviderAdapter, ProviderError, get_adapter
from relsync.storage.db import (
    JOB_COUNTERS,
    ConnectionStatus,
    DatabaseError,
    JobStatus,
)
from relsync.sync.events import EventReconciler
from relsync.sync.merge import MergeOutcome, MergePolicy, MergeResult
from relsync.sync.record import ContactRecord, EventRecord, parse_datetime

if TYPE_CHECKING:
    from relsync.config.settings import Settings
    from relsync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)

DIRECTION_IMPORT = "import"
DIRECTION_EXPORT = "export"
DIRECTION_BOTH = "both"
DIRECTIONS = (DIRECTION_IMPORT, DIRECTION_EXPORT, DIRECTION_BOTH)

DEFAULT_ERROR_LOG_LIMIT = 100

# Failures that cost one record, not the run
STORAGE_ERRORS = (sqlite3.Error, DatabaseError)

AdapterFactory = Callable[[dict[str, Any], Optional["Settings"]], ProviderAdapter]


@dataclass
class SyncStats:
    """Counters and error log accumulated during a run."""

    total: int = 0
    processed: int = 0
    created: int = 0
    merged: int = 0
    skipped: int = 0
    exported: int = 0
    export_failed: int = 0
    errors: int = 0
    error_log: list[str] = field(default_factory=list)
    error_log_limit: int = DEFAULT_ERROR_LOG_LIMIT

    def log_error(self, message: str) -> None:
        """Append to the error log, keeping only the first entries."""
        if len(self.error_log) < self.error_log_limit:
            self.error_log.append(message)

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.log_error(message)

    def count_outcome(self, result: MergeResult) -> None:
        self.processed += 1
        if result.outcome == MergeOutcome.CREATED:
            self.created += 1
        elif result.outcome == MergeOutcome.MERGED:
            self.merged += 1
        else:
            self.skipped += 1

    def counters(self) -> dict[str, int]:
        return {key: getattr(self, key) for key in JOB_COUNTERS}

    def __str__(self) -> str:
        return (
            f"total={self.total} created={self.created} merged={self.merged} "
            f"skipped={self.skipped} exported={self.exported} "
            f"export_failed={self.export_failed} errors={self.errors}"
        )


@dataclass
class SyncResult:
    """Outcome of one run."""

    job_id: int
    status: JobStatus
    stats: SyncStats = field(default_factory=SyncStats)
    error: Optional[str] = None
    noop: bool = False  # The job had already finished; nothing ran

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


@dataclass
class _SourceTally:
    attempted: int = 0
    failed: list[str] = field(default_factory=list)

    def fail(self, source: str, error: Exception) -> None:
        self.failed.append(f"{source}: {error}")

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and len(self.failed) == self.attempted


def event_from_row(event: dict[str, Any]) -> EventRecord:
    """Outgoing event built from a stored event row."""
    return EventRecord(
        title=event["title"],
        starts_at=parse_datetime(event["starts_at"]),
        ends_at=parse_datetime(event.get("ends_at")),
        description=event.get("description"),
        location=event.get("location"),
        all_day=bool(event.get("all_day")),
        external_id=event.get("external_id"),
        etag=(event.get("sync_metadata") or {}).get("etag"),
    )


class SyncOrchestrator:
    """
    Runs sync jobs.

    Usage:
        orchestrator = SyncOrchestrator(db, settings=settings)
        result = orchestrator.run(job_id)
        if not result.succeeded:
            print(result.error)
    """

    def __init__(
        self,
        db: "SyncDatabase",
        settings: Optional["Settings"] = None,
        notifier: Optional[StatusNotifier] = None,
        credentials: Optional[CredentialManager] = None,
        adapter_factory: AdapterFactory = get_adapter,
    ):
        self.db = db
        self.settings = settings
        self.notifier = notifier or StatusNotifier()
        self.credentials = credentials or CredentialManager.from_settings(
            db, settings
        )
        self.adapter_factory = adapter_factory
        self.merge_policy = MergePolicy(db)
        self.event_reconciler = EventReconciler(db)
        self.error_log_limit = (
            settings.error_log_limit if settings else DEFAULT_ERROR_LOG_LIMIT
        )

    def run(self, job_id: int) -> SyncResult:
        """
        Execute one sync job. Never raises for run failures.

        Returns:
            SyncResult; status FAILED tells the job runner to retry
        """
        job = self.db.get_sync_job(job_id)
        if job is None:
            logger.error(f"Sync job {job_id} not found")
            return SyncResult(
                job_id=job_id, status=JobStatus.FAILED, error="job not found"
            )

        current = JobStatus(job["status"])
        if current in (JobStatus.COMPLETED, JobStatus.FAILED):
            logger.info(f"Sync job {job_id} already {current.value}, nothing to do")
            return SyncResult(job_id=job_id, status=current, noop=True)

        user_id = job["user_id"]
        connection_id = job["connection_id"]
        stats = SyncStats(error_log_limit=self.error_log_limit)

        self.db.start_sync_job(job_id)
        self.notifier.publish(
            user_id,
            SyncPhase.STARTED,
            {
                "job_id": job_id,
                "connection_id": connection_id,
                "source": job["source"],
                "direction": job["direction"],
            },
        )
        logger.info(
            f"Starting sync job {job_id} for connection {connection_id} "
            f"({job['source']}, {job['direction']})"
        )

        try:
            connection = self.db.get_connection(connection_id)
            if connection is None:
                return self._fail(
                    job, stats, f"Connection {connection_id} not found", None
                )
            if connection["status"] == ConnectionStatus.DISCONNECTED.value:
                return self._fail(
                    job, stats, f"Connection {connection_id} is disconnected", None
                )

            try:
                connection = self.credentials.ensure_fresh(connection)
            except CredentialError as e:
                logger.warning(f"Credentials unusable for job {job_id}: {e}")
                return self._fail(job, stats, str(e), connection_id)

            return self._sync(job, connection, stats)

        except Exception as e:
            logger.exception(f"Sync job {job_id} failed unexpectedly")
            return self._fail(job, stats, f"{type(e).__name__}: {e}", connection_id)

    def _sync(
        self, job: dict[str, Any], connection: dict[str, Any], stats: SyncStats
    ) -> SyncResult:
        adapter = self.adapter_factory(connection, self.settings)
        token = connection.get("access_token") or ""
        direction = job["direction"]
        user_id = job["user_id"]
        sources = _SourceTally()

        importing = direction in (DIRECTION_IMPORT, DIRECTION_BOTH)
        exporting = direction in (DIRECTION_EXPORT, DIRECTION_BOTH)

        if adapter.supports_contacts and importing:
            sources.attempted += 1
            self._import_contacts(adapter, token, user_id, stats, sources)

        if adapter.supports_calendar and importing:
            sources.attempted += 1
            self._import_events(adapter, token, user_id, connection, stats, sources)

        if adapter.supports_calendar and exporting:
            self._export_events(adapter, token, user_id, connection, stats)

        nothing_usable = stats.processed == 0 and stats.exported == 0
        if sources.all_failed and nothing_usable:
            return self._fail(job, stats, "; ".join(sources.failed), connection["id"])

        for failure in sources.failed:
            stats.log_error(failure)

        self.db.finish_sync_job(
            job["id"], JobStatus.COMPLETED, stats.counters(), stats.error_log
        )
        self.db.mark_connection_synced(connection["id"])
        self.notifier.publish(
            user_id, SyncPhase.COMPLETED, {"job_id": job["id"], **stats.counters()}
        )
        logger.info(f"Sync job {job['id']} completed: {stats}")
        return SyncResult(job_id=job["id"], status=JobStatus.COMPLETED, stats=stats)

    def _fetch_all_contacts(
        self, adapter: ProviderAdapter, token: str, stats: SyncStats
    ) -> tuple[list[ContactRecord], Optional[ProviderError]]:
        records: list[ContactRecord] = []
        cursor: Optional[str] = None
        seen_cursors: set[str] = set()
        while True:
            try:
                page = adapter.fetch_contacts(token, cursor)
            except ProviderError as e:
                return records, e
            records.extend(page.records)
            for feed_error in page.errors:
                stats.log_error(feed_error)
            cursor = page.next_cursor
            if cursor is None:
                return records, None
            if cursor in seen_cursors:
                logger.warning(f"Provider repeated page cursor {cursor!r}; stopping")
                return records, None
            seen_cursors.add(cursor)

    def _import_contacts(
        self,
        adapter: ProviderAdapter,
        token: str,
        user_id: str,
        stats: SyncStats,
        sources: _SourceTally,
    ) -> None:
        records, error = self._fetch_all_contacts(adapter, token, stats)
        if error is not None:
            logger.warning(f"Contact fetch from {adapter.name} failed: {error}")
            sources.fail("contacts", error)

        logger.info(f"Fetched {len(records)} contacts from {adapter.name}")
        stats.total += len(records)
        for record in records:
            try:
                stats.count_outcome(self.merge_policy.apply(user_id, record))
            except STORAGE_ERRORS as e:
                logger.warning(f"Failed to store contact {record.display_name!r}: {e}")
                stats.record_error(f"contact {record.external_id or record.email}: {e}")

    def _import_events(
        self,
        adapter: ProviderAdapter,
        token: str,
        user_id: str,
        connection: dict[str, Any],
        stats: SyncStats,
        sources: _SourceTally,
    ) -> None:
        try:
            records = adapter.fetch_events(token)
        except ProviderError as e:
            logger.warning(f"Event fetch from {adapter.name} failed: {e}")
            sources.fail("events", e)
            return

        logger.info(f"Fetched {len(records)} events from {adapter.name}")
        stats.total += len(records)
        for record in records:
            try:
                result = self.event_reconciler.reconcile(user_id, connection, record)
                stats.count_outcome(result)
            except STORAGE_ERRORS as e:
                logger.warning(f"Failed to store event {record.title!r}: {e}")
                stats.record_error(f"event {record.external_id or record.title}: {e}")

    def _export_events(
        self,
        adapter: ProviderAdapter,
        token: str,
        user_id: str,
        connection: dict[str, Any],
        stats: SyncStats,
    ) -> None:
        pending = self.db.list_events_pending_sync(user_id, connection["id"])
        if pending:
            logger.info(f"Exporting {len(pending)} events to {adapter.name}")

        for event in pending:
            record = event_from_row(event)
            try:
                if event["external_id"]:
                    pushed = adapter.update_event(token, event["external_id"], record)
                else:
                    pushed = adapter.create_event(token, record)
                self.db.mark_event_exported(
                    event["id"],
                    external_id=pushed.external_id,
                    etag=pushed.etag,
                    connection_id=connection["id"],
                    source=connection["provider"],
                )
            except (ProviderError, *STORAGE_ERRORS) as e:
                logger.warning(f"Export of event {event['id']} failed: {e}")
                stats.export_failed += 1
                stats.log_error(f"export event {event['id']}: {e}")
                continue
            stats.exported += 1

    def _fail(
        self,
        job: dict[str, Any],
        stats: SyncStats,
        message: str,
        connection_id: Optional[int],
    ) -> SyncResult:
        """Record a failed run on the job and connection, then notify."""
        stats.log_error(message)
        try:
            self.db.finish_sync_job(
                job["id"], JobStatus.FAILED, stats.counters(), stats.error_log
            )
            if connection_id is not None:
                self.db.mark_connection_error(connection_id, message)
        except sqlite3.Error:
            logger.exception(f"Could not record failure of sync job {job['id']}")

        self.notifier.publish(
            job["user_id"],
            SyncPhase.FAILED,
            {"job_id": job["id"], "error": message, **stats.counters()},
        )
        logger.error(f"Sync job {job['id']} failed: {message}")
        return SyncResult(
            job_id=job["id"], status=JobStatus.FAILED, stats=stats, error=message
        )


__all__ = [
    "DIRECTIONS",
    "DIRECTION_BOTH",
    "DIRECTION_EXPORT",
    "DIRECTION_IMPORT",
    "SyncOrchestrator",
    "SyncResult",
    "SyncStats",
    "event_from_row",
]
