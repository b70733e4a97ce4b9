"""
Sync state machine for calendar events.

Each local event carries a SyncStatus describing its relationship to the
last known external copy:

    local_only    created locally, never associated with a connection
    pending_push  was synced, edited locally since, not yet re-exported
    synced        matches the last known external version
    conflict      irreconcilable divergence (never entered automatically)

Local edits go through status_after_local_edit(). Only import and export
move an event to synced, via status_after_sync().
"""

from enum import Enum


class SyncStatus(Enum):
    """Relationship of a local event to its external copy."""

    LOCAL_ONLY = "local_only"
    PENDING_PUSH = "pending_push"
    SYNCED = "synced"
    CONFLICT = "conflict"

    @classmethod
    def parse(cls, value: "str | SyncStatus") -> "SyncStatus":
        """Accept either an enum member or its stored string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as e:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid sync status '{value}'. Must be one of: {valid}"
            ) from e


# States selected for export
EXPORTABLE_STATUSES = (SyncStatus.LOCAL_ONLY, SyncStatus.PENDING_PUSH)


def status_after_local_edit(status: "str | SyncStatus") -> SyncStatus:
    """
    State after a user edits an event locally.

    A synced event now diverges from its external copy and must be pushed.
    Every other state is left as it is: a local_only event has nothing
    external to diverge from.
    """
    current = SyncStatus.parse(status)
    if current is SyncStatus.SYNCED:
        return SyncStatus.PENDING_PUSH
    return current


def status_after_sync() -> SyncStatus:
    """State after a successful import or export."""
    return SyncStatus.SYNCED


def is_exportable(status: "str | SyncStatus") -> bool:
    return SyncStatus.parse(status) in EXPORTABLE_STATUSES


__all__ = [
    "EXPORTABLE_STATUSES",
    "SyncStatus",
    "is_exportable",
    "status_after_local_edit",
    "status_after_sync",
]
