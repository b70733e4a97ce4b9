"""
relsync.jobs - Durable job queue and the worker that drains it.
"""

from relsync.jobs.queue import (
    ConnectionStateError,
    JobQueue,
    JobQueueError,
    QueuedJob,
)
from relsync.jobs.runner import JobRunner

__all__ = [
    "ConnectionStateError",
    "JobQueue",
    "JobQueueError",
    "JobRunner",
    "QueuedJob",
]
