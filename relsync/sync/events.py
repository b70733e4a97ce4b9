"""
Reconciliation of external calendar events.

An incoming event is resolved against the user's local events by:
1. Exact external id
2. Same title (case-insensitive, trimmed) starting no more than one hour
   apart from the incoming start; the closest start wins

A matched event whose recorded etag equals the incoming one is left alone.
Any other match is overwritten from the external copy and marked synced.
Unmatched events are created as synced.
"""

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional

from relsync.sync.merge import MergeOutcome, MergeResult
from relsync.sync.record import parse_datetime, utcnow
from relsync.sync.resolver import MatchRule
from relsync.sync.state import status_after_sync
from relsync.utils.logging import get_reconcile_logger

if TYPE_CHECKING:
    from relsync.storage.db import SyncDatabase
    from relsync.sync.record import EventRecord

logger = logging.getLogger(__name__)

# Largest start-time difference at which two same-titled events are the same
MATCH_WINDOW = timedelta(hours=1)


def event_fields(record: "EventRecord") -> dict[str, Any]:
    """Local column values taken from an external event."""
    return {
        "title": record.title,
        "description": record.description,
        "location": record.location,
        "starts_at": record.starts_at,
        "ends_at": record.ends_at,
        "all_day": record.all_day,
        "external_id": record.external_id,
    }


class EventReconciler:
    """
    Imports external calendar events into the local store.

    Usage:
        reconciler = EventReconciler(db)
        result = reconciler.reconcile("user-1", connection, record)
    """

    def __init__(self, db: "SyncDatabase"):
        self.db = db
        self._reconcile_log = get_reconcile_logger()

    def find_match(
        self, user_id: str, record: "EventRecord"
    ) -> tuple[Optional[dict[str, Any]], MatchRule]:
        """
        Find the local event an external event corresponds to.

        Returns:
            (event, rule) where event is None and rule is NONE on no match
        """
        if record.external_id:
            event = self.db.find_event_by_external_id(user_id, record.external_id)
            if event:
                return event, MatchRule.EXTERNAL_ID

        event = self.find_matching_event(user_id, record.title, record.starts_at)
        if event:
            return event, MatchRule.TITLE_WINDOW
        return None, MatchRule.NONE

    def find_matching_event(
        self, user_id: str, title: str, starts_at: Any
    ) -> Optional[dict[str, Any]]:
        """
        Find a same-titled event starting within the match window.

        Titles compare case-insensitively after trimming. Among several
        candidates the one whose start is closest wins.
        """
        start = parse_datetime(starts_at)
        if start is None:
            return None

        best: Optional[dict[str, Any]] = None
        best_delta: Optional[timedelta] = None
        for candidate in self.db.find_events_by_title(user_id, title):
            candidate_start = parse_datetime(candidate["starts_at"])
            if candidate_start is None:
                continue
            delta = abs(candidate_start - start)
            if delta > MATCH_WINDOW:
                continue
            if best_delta is None or delta < best_delta:
                best, best_delta = candidate, delta
        return best

    def reconcile(
        self,
        user_id: str,
        connection: dict[str, Any],
        record: "EventRecord",
    ) -> MergeResult:
        """
        Create, overwrite or skip the local copy of an external event.

        Args:
            user_id: Owner of the local events
            connection: Connection the event was fetched through
            record: Incoming normalized event

        Returns:
            MergeResult with outcome created, merged or skipped
        """
        source = connection["provider"]
        event, rule = self.find_match(user_id, record)

        if event is None:
            event_id = self.db.create_event(
                user_id=user_id,
                connection_id=connection["id"],
                sync_status=status_after_sync(),
                sync_metadata={"etag": record.etag, "source": source},
                last_synced_at=utcnow(),
                **event_fields(record),
            )
            self._reconcile_log.debug(
                f"EVENT CREATED: {event_id} '{record.title}' at "
                f"{record.starts_at.isoformat()}"
            )
            return MergeResult(
                outcome=MergeOutcome.CREATED,
                record_id=event_id,
                changed=True,
                changes=["created"],
            )

        current_etag = event["sync_metadata"].get("etag")
        if current_etag and current_etag == record.etag:
            self._reconcile_log.debug(
                f"EVENT UNCHANGED [{rule.value}]: {event['id']} '{event['title']}' "
                f"etag={current_etag}"
            )
            return MergeResult(
                outcome=MergeOutcome.SKIPPED,
                record_id=event["id"],
                rule=rule,
                reason="etag unchanged",
            )

        self.db.apply_external_event(
            event["id"],
            fields=event_fields(record),
            connection_id=connection["id"],
            source=source,
            etag=record.etag,
        )
        self._reconcile_log.debug(
            f"EVENT UPDATED [{rule.value}]: {event['id']} '{record.title}' "
            f"etag {current_etag} -> {record.etag}"
        )
        return MergeResult(
            outcome=MergeOutcome.MERGED,
            record_id=event["id"],
            rule=rule,
            changed=True,
            changes=["overwrite"],
        )


__all__ = ["EventReconciler", "MATCH_WINDOW", "event_fields"]
