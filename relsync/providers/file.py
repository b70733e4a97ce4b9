"""
Local JSON file provider.

The connection's account identifier is the path of a JSON document:

    {
        "contacts": [{"name": "...", "email": "...", "external_id": "..."}],
        "events": [{"title": "...", "starts_at": "2026-01-05T10:00:00Z"}]
    }

Contacts are served in pages. Exported events are written back into the
same file under a generated "file:<uuid>" id.
"""

import hashlib
import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

from relsync.providers.base import (
    ContactPage,
    ProviderAdapter,
    ProviderError,
    PushResult,
)
from relsync.sync.record import ContactRecord, EventRecord

logger = logging.getLogger(__name__)

PROVIDER_FILE = "file"
DEFAULT_PAGE_SIZE = 100
EXTERNAL_ID_PREFIX = "file:"


def event_etag(data: dict[str, Any]) -> str:
    """Content hash of a stored event, changing whenever the event does."""
    payload = {k: v for k, v in data.items() if k != "etag"}
    digest = hashlib.sha1(
        json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return f'"{digest[:16]}"'


class FileAdapter(ProviderAdapter):
    """
    Adapter reading contacts and events from a JSON file.

    Args:
        path: Location of the JSON document
        page_size: Contacts per page
    """

    name = PROVIDER_FILE
    supports_contacts = True
    supports_calendar = True

    def __init__(self, path: Path | str, page_size: int = DEFAULT_PAGE_SIZE):
        self.path = Path(path).expanduser()
        self.page_size = max(1, page_size)
        self._lock = threading.Lock()

    @classmethod
    def from_connection(cls, connection, settings=None):
        path = connection.get("account_identifier")
        if not path:
            raise ProviderError(
                f"Connection {connection.get('id')} has no file path configured"
            )
        page_size = settings.page_size if settings else DEFAULT_PAGE_SIZE
        return cls(path, page_size=page_size)

    def _load(self) -> dict[str, Any]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ProviderError(f"Contact file not found: {self.path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ProviderError(f"Cannot read contact file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise ProviderError(f"Contact file {self.path} must hold a JSON object")
        return data

    def _save(self, data: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            tmp_path.replace(self.path)
        except OSError as e:
            raise ProviderError(f"Cannot write contact file {self.path}: {e}") from e

    def fetch_contacts(
        self, token: str, page_cursor: Optional[str] = None
    ) -> ContactPage:
        """
        Fetch one page of contacts.

        Malformed entries are logged and skipped.

        Raises:
            ProviderError: If the file is unreadable or the cursor is invalid
        """
        try:
            offset = int(page_cursor) if page_cursor else 0
        except ValueError as e:
            raise ProviderError(f"Invalid page cursor: {page_cursor}") from e

        contacts = self._load().get("contacts") or []
        if not isinstance(contacts, list):
            raise ProviderError(f"'contacts' in {self.path} must be a list")

        records = []
        end = offset + self.page_size
        for index, item in enumerate(contacts[offset:end], start=offset):
            try:
                record = ContactRecord.from_dict(item)
            except ValueError as e:
                logger.warning(f"Skipping contact #{index} in {self.path}: {e}")
                continue
            if not record.metadata.source:
                record.metadata.source = self.name
            records.append(record)

        next_cursor = str(end) if end < len(contacts) else None
        return ContactPage(records=records, next_cursor=next_cursor)

    def fetch_events(self, token: str) -> list[EventRecord]:
        events = self._load().get("events") or []
        records = []
        for index, item in enumerate(events):
            try:
                record = EventRecord.from_dict(item)
            except ValueError as e:
                logger.warning(f"Skipping event #{index} in {self.path}: {e}")
                continue
            if record.etag is None:
                record.etag = event_etag(item)
            records.append(record)
        return records

    def create_event(self, token: str, event: EventRecord) -> PushResult:
        with self._lock:
            data = self._load()
            external_id = f"{EXTERNAL_ID_PREFIX}{uuid.uuid4()}"
            stored = event.to_dict()
            stored["external_id"] = external_id
            stored["etag"] = event_etag(stored)
            data.setdefault("events", []).append(stored)
            self._save(data)
        logger.debug(f"Wrote event {external_id} to {self.path}")
        return PushResult(external_id=external_id, etag=stored["etag"])

    def update_event(
        self, token: str, external_id: str, event: EventRecord
    ) -> PushResult:
        """
        Replace a stored event.

        Raises:
            ProviderError: If no event with external_id exists in the file
        """
        with self._lock:
            data = self._load()
            events = data.get("events") or []
            for index, item in enumerate(events):
                if isinstance(item, dict) and item.get("external_id") == external_id:
                    stored = event.to_dict()
                    stored["external_id"] = external_id
                    stored["etag"] = event_etag(stored)
                    events[index] = stored
                    break
            else:
                raise ProviderError(
                    f"Event {external_id} not found in {self.path}", status=404
                )
            self._save(data)
        return PushResult(external_id=external_id, etag=stored["etag"])


__all__ = ["FileAdapter", "PROVIDER_FILE", "event_etag"]
