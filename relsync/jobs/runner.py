"""
Worker loop that drains the job queue.

Provides a JobRunner that:
- Claims due jobs and runs them through the sync orchestrator
- Settles each job as completed, retried or discarded
- Runs up to `concurrency` jobs at once on worker threads
- Polls with an interruptible sleep and stops cleanly on SIGTERM/SIGINT
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from relsync.jobs.queue import JobQueue, QueuedJob
from relsync.storage.db import QueueState
from relsync.sync.orchestrator import SyncResult
from relsync.sync.record import utcnow

if TYPE_CHECKING:
    from relsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


@dataclass
class RunnerStats:
    """Counts of jobs handled since the runner started."""

    started_at: datetime = field(default_factory=utcnow)
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    discarded: int = 0
    last_error: str | None = None


class JobRunner:
    """
    Processes queued sync jobs until stopped.

    Each worker thread builds its own orchestrator through
    orchestrator_factory, so no database handle or adapter is shared
    between concurrent runs.

    Usage:
        runner = JobRunner(queue, lambda: SyncOrchestrator(db, settings))
        runner.run()  # blocks until SIGTERM/SIGINT

        # Or drain what is due and return:
        runner.run_once()
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator_factory: Callable[[], SyncOrchestrator],
        concurrency: int = 1,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.queue = queue
        self.orchestrator_factory = orchestrator_factory
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.stats = RunnerStats()
        self._shutdown = threading.Event()
        self._stats_lock = threading.Lock()
        self._original_handlers: dict[int, object] = {}

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def stop(self) -> None:
        """Request shutdown; running jobs finish first."""
        logger.info("Stop requested")
        self._shutdown.set()

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, finishing running jobs...")
        self._shutdown.set()

    def _setup_signal_handlers(self) -> None:
        # Handlers can only be installed from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(
                signum, self._signal_handler
            )
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers.clear()

    def _sleep_interruptible(self, seconds: float) -> bool:
        """Sleep unless shutdown is requested; False if interrupted."""
        return not self._shutdown.wait(timeout=seconds)

    def process(self, job: QueuedJob) -> SyncResult | None:
        """
        Run one claimed job and settle it on the queue.

        Exceptions escaping the orchestrator count as a failed attempt.
        """
        try:
            result = self.orchestrator_factory().run(job.sync_job_id)
        except Exception as e:
            logger.exception(f"Queue #{job.id} raised while running")
            self._settle_failure(job, f"{type(e).__name__}: {e}")
            return None

        if result.succeeded:
            self.queue.complete(job)
            with self._stats_lock:
                self.stats.completed += 1
        else:
            self._settle_failure(job, result.error)
        return result

    def _settle_failure(self, job: QueuedJob, error: str | None) -> None:
        state = self.queue.fail(job, error)
        with self._stats_lock:
            self.stats.last_error = error
            if state == QueueState.DISCARDED:
                self.stats.discarded += 1
            else:
                self.stats.retried += 1

    def _claim(self) -> QueuedJob | None:
        job = self.queue.claim_next()
        if job is not None:
            with self._stats_lock:
                self.stats.claimed += 1
        return job

    def run_once(self) -> int:
        """
        Process jobs until none are due, then return.

        Returns:
            Number of jobs processed
        """
        processed = 0
        while not self.shutdown_requested:
            job = self._claim()
            if job is None:
                break
            self.process(job)
            processed += 1
        return processed

    def run(self) -> None:
        """Process jobs until a shutdown signal arrives."""
        logger.info(
            f"Job runner started (concurrency: {self.concurrency}, "
            f"poll interval: {self.poll_interval}s)"
        )
        self._shutdown.clear()
        self._setup_signal_handlers()

        executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="relsync-worker"
        )
        running: set[Future[SyncResult | None]] = set()
        try:
            while not self.shutdown_requested:
                while len(running) < self.concurrency and not self.shutdown_requested:
                    job = self._claim()
                    if job is None:
                        break
                    running.add(executor.submit(self.process, job))

                if running:
                    done, running = wait(
                        running,
                        timeout=self.poll_interval,
                        return_when=FIRST_COMPLETED,
                    )
                    for future in done:
                        error = future.exception()
                        if error is not None:
                            logger.error(f"Worker failed to settle a job: {error}")
                elif not self._sleep_interruptible(self.poll_interval):
                    break
        finally:
            if running:
                logger.info(f"Waiting for {len(running)} running job(s)")
            executor.shutdown(wait=True)
            self._restore_signal_handlers()
            logger.info(
                f"Job runner stopped: {self.stats.completed} completed, "
                f"{self.stats.retried} retried, {self.stats.discarded} discarded"
            )


__all__ = ["DEFAULT_POLL_INTERVAL", "JobRunner", "RunnerStats"]
