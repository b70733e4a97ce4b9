"""
Durable job queue for sync runs.

Each enqueue creates a pending sync job record and a queue row in one
transaction. Workers claim rows atomically; a failed run goes back on the
queue with exponential backoff until its attempts are used up, after which
the row is discarded.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional

from relsync.storage.db import ConnectionStatus, QueueState
from relsync.sync.orchestrator import DIRECTION_BOTH, DIRECTIONS
from relsync.sync.record import utcnow

if TYPE_CHECKING:
    from relsync.config.settings import Settings
    from relsync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 30.0  # seconds


class JobQueueError(Exception):
    """Raised when a job cannot be enqueued or a queue row is missing."""

    pass


class ConnectionStateError(JobQueueError):
    """Raised when enqueueing against a connection that cannot sync."""

    pass


@dataclass
class QueuedJob:
    """A row of the job queue."""

    id: int
    sync_job_id: int
    connection_id: int
    user_id: str
    direction: str
    state: QueueState
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "QueuedJob":
        return cls(
            id=row["id"],
            sync_job_id=row["sync_job_id"],
            connection_id=row["connection_id"],
            user_id=row["user_id"],
            direction=row["direction"],
            state=QueueState(row["state"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            last_error=row.get("last_error"),
        )


def retry_delay(attempts: int, base_delay: float) -> float:
    """Seconds to wait before the next attempt: base, 2x base, 4x base..."""
    return base_delay * (2 ** max(0, attempts - 1))


class JobQueue:
    """
    Enqueue, claim and settle sync jobs.

    Usage:
        queue = JobQueue(db)
        job = queue.enqueue(connection_id, "user-1", direction="import")

        claimed = queue.claim_next()
        ...
        queue.complete(claimed)  # or queue.fail(claimed, "error")
    """

    def __init__(
        self,
        db: "SyncDatabase",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    ):
        self.db = db
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay

    @classmethod
    def from_settings(cls, db: "SyncDatabase", settings: "Settings") -> "JobQueue":
        return cls(
            db,
            max_attempts=settings.max_attempts,
            retry_base_delay=settings.retry_base_delay,
        )

    def enqueue(
        self, connection_id: int, user_id: str, direction: str = DIRECTION_BOTH
    ) -> QueuedJob:
        """
        Queue a sync run for a connection.

        Raises:
            JobQueueError: If the direction is unknown, or the connection
                           does not exist or belongs to another user
            ConnectionStateError: If the connection is in error state or
                                  disconnected
        """
        if direction not in DIRECTIONS:
            raise JobQueueError(
                f"Invalid direction '{direction}'. "
                f"Must be one of: {', '.join(DIRECTIONS)}"
            )

        connection = self.db.get_connection(connection_id)
        if connection is None:
            raise JobQueueError(f"Connection {connection_id} not found")
        if connection["user_id"] != user_id:
            raise JobQueueError(
                f"Connection {connection_id} does not belong to user {user_id}"
            )

        status = connection["status"]
        if status == ConnectionStatus.ERROR.value:
            raise ConnectionStateError(
                f"Connection {connection_id} is in error state: "
                f"{connection.get('sync_error') or 'unknown error'}"
            )
        if status == ConnectionStatus.DISCONNECTED.value:
            raise ConnectionStateError(f"Connection {connection_id} is disconnected")

        row = self.db.enqueue_job(
            user_id=user_id,
            connection_id=connection_id,
            source=connection["provider"],
            direction=direction,
            max_attempts=self.max_attempts,
        )
        job = QueuedJob.from_row(row)
        logger.info(
            f"Enqueued sync job {job.sync_job_id} (queue #{job.id}) for "
            f"connection {connection_id}, direction={direction}"
        )
        return job

    def claim_next(self, queue_id: Optional[int] = None) -> Optional[QueuedJob]:
        """
        Claim the next due job, or None if the queue is idle.

        With queue_id, only that row is claimed, and only if it is due.
        """
        row = self.db.claim_queue_job(queue_id=queue_id)
        if row is None:
            return None
        job = QueuedJob.from_row(row)
        logger.debug(
            f"Claimed queue #{job.id} (attempt {job.attempts}/{job.max_attempts})"
        )
        return job

    def complete(self, job: QueuedJob) -> None:
        self.db.set_queue_state(job.id, QueueState.COMPLETED)
        job.state = QueueState.COMPLETED

    def fail(self, job: QueuedJob, error: Optional[str] = None) -> QueueState:
        """
        Settle a failed attempt.

        The job is rescheduled with backoff while attempts remain and
        discarded otherwise. A rescheduled job's sync record goes back to
        pending so the next attempt runs it again.

        Returns:
            The job's new state
        """
        message = error or "sync run failed"
        if job.attempts >= job.max_attempts:
            self.db.set_queue_state(job.id, QueueState.DISCARDED, last_error=message)
            job.state = QueueState.DISCARDED
            logger.error(
                f"Discarding queue #{job.id} after {job.attempts} attempts: {message}"
            )
            return job.state

        delay = retry_delay(job.attempts, self.retry_base_delay)
        self.db.reset_sync_job(job.sync_job_id)
        self.db.set_queue_state(
            job.id,
            QueueState.AVAILABLE,
            run_after=utcnow() + timedelta(seconds=delay),
            last_error=message,
        )
        job.state = QueueState.AVAILABLE
        logger.warning(
            f"Queue #{job.id} failed (attempt {job.attempts}/{job.max_attempts}), "
            f"retrying in {delay:.0f}s: {message}"
        )
        return job.state

    def counts(self) -> dict[str, int]:
        return self.db.count_queue_jobs()


__all__ = [
    "ConnectionStateError",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_BASE_DELAY",
    "JobQueue",
    "JobQueueError",
    "QueuedJob",
    "retry_delay",
]
