"""
Tests for the durable job queue.
"""

from datetime import timedelta

import pytest

from relsync.config.settings import Settings
from relsync.jobs.queue import (
    ConnectionStateError,
    JobQueue,
    JobQueueError,
    QueuedJob,
    retry_delay,
)
from relsync.storage.db import QueueState, SyncDatabase
from relsync.sync.record import parse_datetime, utcnow


@pytest.fixture
def db():
    database = SyncDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def connection_id(db):
    return db.create_connection("user-1", "file")


@pytest.fixture
def queue(db):
    return JobQueue(db, max_attempts=3, retry_base_delay=30.0)


class TestRetryDelay:
    """Tests for the backoff schedule."""

    def test_doubles_per_attempt(self):
        assert [retry_delay(n, 30.0) for n in (1, 2, 3)] == [30.0, 60.0, 120.0]

    def test_zero_attempts_uses_base(self):
        assert retry_delay(0, 10.0) == 10.0


class TestEnqueue:
    """Tests for enqueue validation."""

    def test_enqueue(self, db, queue, connection_id):
        job = queue.enqueue(connection_id, "user-1", direction="import")
        assert isinstance(job, QueuedJob)
        assert job.state is QueueState.AVAILABLE
        assert job.max_attempts == 3
        record = db.get_sync_job(job.sync_job_id)
        assert record["status"] == "pending"
        assert record["direction"] == "import"
        assert record["source"] == "file"

    def test_invalid_direction(self, queue, connection_id):
        with pytest.raises(JobQueueError, match="Invalid direction"):
            queue.enqueue(connection_id, "user-1", direction="sideways")

    def test_missing_connection(self, queue):
        with pytest.raises(JobQueueError, match="not found"):
            queue.enqueue(42, "user-1")

    def test_other_users_connection(self, queue, connection_id):
        with pytest.raises(JobQueueError, match="does not belong"):
            queue.enqueue(connection_id, "user-2")

    def test_connection_in_error(self, db, queue, connection_id):
        db.mark_connection_error(connection_id, "token revoked")
        with pytest.raises(ConnectionStateError, match="token revoked"):
            queue.enqueue(connection_id, "user-1")

    def test_disconnected_connection(self, db, queue, connection_id):
        db.set_connection_status(connection_id, "disconnected")
        with pytest.raises(ConnectionStateError, match="disconnected"):
            queue.enqueue(connection_id, "user-1")

    def test_from_settings(self, db):
        queue = JobQueue.from_settings(
            db, Settings(max_attempts=7, retry_base_delay=2.0)
        )
        assert queue.max_attempts == 7
        assert queue.retry_base_delay == 2.0


class TestClaimAndSettle:
    """Tests for claiming and settling jobs."""

    def test_claim_next(self, queue, connection_id):
        enqueued = queue.enqueue(connection_id, "user-1")
        claimed = queue.claim_next()
        assert claimed.id == enqueued.id
        assert claimed.state is QueueState.RUNNING
        assert claimed.attempts == 1
        assert queue.claim_next() is None

    def test_claim_is_exclusive(self, queue, connection_id):
        queue.enqueue(connection_id, "user-1")
        claims = [queue.claim_next() for _ in range(3)]
        assert sum(1 for c in claims if c is not None) == 1

    def test_complete(self, db, queue, connection_id):
        queue.enqueue(connection_id, "user-1")
        job = queue.claim_next()
        queue.complete(job)
        assert db.get_queue_job(job.id)["state"] == "completed"
        assert queue.counts()["completed"] == 1

    def test_fail_reschedules_with_backoff(self, db, queue, connection_id):
        queue.enqueue(connection_id, "user-1")
        job = queue.claim_next()
        db.finish_sync_job(job.sync_job_id, "failed", {}, ["boom"])
        before = utcnow()

        state = queue.fail(job, "boom")

        assert state is QueueState.AVAILABLE
        row = db.get_queue_job(job.id)
        assert row["last_error"] == "boom"
        run_after = parse_datetime(row["run_after"])
        assert run_after >= before + timedelta(seconds=30)
        assert db.get_sync_job(job.sync_job_id)["status"] == "pending"
        assert queue.claim_next() is None

    def test_fail_discards_after_max_attempts(self, db, connection_id):
        queue = JobQueue(db, max_attempts=2, retry_base_delay=0)
        queue.enqueue(connection_id, "user-1")

        first = queue.claim_next()
        assert queue.fail(first, "one") is QueueState.AVAILABLE
        second = queue.claim_next()
        assert second.attempts == 2
        assert queue.fail(second, "two") is QueueState.DISCARDED

        assert db.get_queue_job(second.id)["state"] == "discarded"
        assert queue.claim_next() is None
        assert queue.counts()["discarded"] == 1

    def test_fail_without_message(self, db, queue, connection_id):
        queue.enqueue(connection_id, "user-1")
        job = queue.claim_next()
        queue.fail(job)
        assert db.get_queue_job(job.id)["last_error"] == "sync run failed"
