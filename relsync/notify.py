"""
Per-user sync status notifications.

Runs publish their lifecycle on the channel "sync:<user_id>". Any number
of callbacks may subscribe to a user's channel; a failing callback is
logged and never interrupts the run that published.
"""

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

Callback = Callable[[str, str, dict[str, Any]], None]


class SyncPhase(Enum):
    """Lifecycle phases announced for a run."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


def channel_for(user_id: str) -> str:
    return f"sync:{user_id}"


class StatusNotifier:
    """
    In-process publish/subscribe for run status.

    Callbacks are called as callback(channel, phase, payload).

    Usage:
        notifier = StatusNotifier()
        notifier.subscribe("user-1", lambda channel, phase, payload: ...)
        notifier.publish("user-1", SyncPhase.STARTED, {"job_id": 7})
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callback]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, callback: Callback) -> Callable[[], None]:
        """
        Register a callback for a user's channel.

        Returns:
            A function that removes the subscription
        """
        channel = channel_for(user_id)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(channel, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(
        self,
        user_id: str,
        phase: Union[str, SyncPhase],
        payload: Optional[dict[str, Any]] = None,
    ) -> int:
        """
        Send a phase to every subscriber of the user's channel.

        Returns:
            Number of callbacks that ran without raising
        """
        phase_value = SyncPhase(phase.value if isinstance(phase, SyncPhase) else phase)
        channel = channel_for(user_id)
        payload = dict(payload or {})
        logger.info(f"[{channel}] {phase_value.value}: {payload}")

        with self._lock:
            callbacks = list(self._subscribers.get(channel, []))

        delivered = 0
        for callback in callbacks:
            try:
                callback(channel, phase_value.value, payload)
                delivered += 1
            except Exception:
                logger.exception(f"Status subscriber failed on {channel}")
        return delivered


__all__ = ["StatusNotifier", "SyncPhase", "channel_for"]
