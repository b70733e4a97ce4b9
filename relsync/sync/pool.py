"""
Bounded-concurrency fan-out for per-record work within one run.

Used where a run has to issue one request per external id (for example
fetching message headers). Each item gets its own deadline measured from
the moment it starts running; an item that overruns it, or raises, is
reported as an error for that item only and never aborts the batch.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_WORKERS = 10
DEFAULT_ITEM_TIMEOUT = 30.0

# How often the collector wakes to check running items against their deadline
POLL_INTERVAL = 0.05


class ItemTimeoutError(Exception):
    """Raised in place of a result when an item exceeds its deadline."""

    pass


@dataclass
class PoolResult(Generic[T]):
    """Outcome of a fan-out, in input order."""

    results: list[tuple[T, Any]] = field(default_factory=list)
    errors: list[tuple[T, Exception]] = field(default_factory=list)

    @property
    def values(self) -> list[Any]:
        return [value for _, value in self.results]


def bounded_map(
    fn: Callable[[T], Any],
    items: Iterable[T],
    max_workers: int = DEFAULT_MAX_WORKERS,
    timeout: float = DEFAULT_ITEM_TIMEOUT,
) -> PoolResult[T]:
    """
    Apply fn to every item with at most max_workers calls in flight.

    A timed-out call cannot be interrupted; its thread is abandoned and
    its eventual result discarded.

    Args:
        fn: Function called once per item
        items: Inputs
        max_workers: Upper bound on concurrent calls
        timeout: Seconds an item may run before it is reported as failed

    Returns:
        PoolResult with (item, value) and (item, error) pairs in input order
    """
    items = list(items)
    pool_result: PoolResult[T] = PoolResult()
    if not items:
        return pool_result

    started: dict[int, float] = {}
    started_lock = threading.Lock()

    def run(index: int, item: T) -> Any:
        with started_lock:
            started[index] = time.monotonic()
        return fn(item)

    outcomes: dict[int, tuple[bool, Any]] = {}
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(items))),
        thread_name_prefix="relsync-fanout",
    )
    try:
        futures: dict[Future[Any], int] = {
            executor.submit(run, index, item): index
            for index, item in enumerate(items)
        }
        pending = set(futures)
        while pending:
            done, pending = wait(
                pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED
            )
            for future in done:
                index = futures[future]
                error = future.exception()
                if error is None:
                    outcomes[index] = (True, future.result())
                else:
                    outcomes[index] = (False, error)

            now = time.monotonic()
            for future in list(pending):
                index = futures[future]
                with started_lock:
                    start = started.get(index)
                if start is not None and now - start > timeout:
                    future.cancel()
                    pending.discard(future)
                    outcomes[index] = (
                        False,
                        ItemTimeoutError(f"Item timed out after {timeout}s"),
                    )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    for index in sorted(outcomes):
        ok, value = outcomes[index]
        if ok:
            pool_result.results.append((items[index], value))
        else:
            logger.debug(f"Fan-out item {items[index]!r} failed: {value}")
            pool_result.errors.append((items[index], value))

    if pool_result.errors:
        logger.warning(
            f"{len(pool_result.errors)} of {len(items)} fan-out items failed"
        )
    return pool_result


__all__ = [
    "DEFAULT_ITEM_TIMEOUT",
    "DEFAULT_MAX_WORKERS",
    "ItemTimeoutError",
    "PoolResult",
    "bounded_map",
]
