"""
Provider adapter contract.

Every external service the engine talks to is wrapped in an adapter that
turns its API into normalized records:

    fetch_contacts(token, page_cursor=None) -> ContactPage
    fetch_events(token) -> list[EventRecord]
    create_event(token, event) -> PushResult
    update_event(token, external_id, event) -> PushResult

Any failure surfaces as ProviderError. Adapters advertise what they can do
through supports_contacts / supports_calendar.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from relsync.config.settings import Settings
    from relsync.sync.record import ContactRecord, EventRecord


class ProviderError(Exception):
    """Raised when a provider request fails or returns unusable data."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UnknownProviderError(ProviderError):
    """Raised when a connection names a provider outside the supported set."""

    pass


@dataclass
class ContactPage:
    """
    One page of contacts.

    Attributes:
        records: Normalized records on this page
        next_cursor: Cursor for the following page, None on the last page
        errors: Feeds that failed while assembling this page, when the
                adapter aggregates several feeds
    """

    records: list[ContactRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    errors: list[str] = field(default_factory=list)


@dataclass
class PushResult:
    """Identity of an event after it was written to the provider."""

    external_id: str
    etag: Optional[str] = None


class ProviderAdapter:
    """
    Base class for provider adapters.

    Subclasses override the operations their service supports and set the
    matching capability flag.
    """

    name: str = ""
    supports_contacts: bool = False
    supports_calendar: bool = False

    @classmethod
    def from_connection(
        cls, connection: dict[str, Any], settings: Optional[Settings] = None
    ) -> ProviderAdapter:
        """Build an adapter for a stored connection."""
        return cls()

    def fetch_contacts(
        self, token: str, page_cursor: Optional[str] = None
    ) -> ContactPage:
        raise ProviderError(f"Provider '{self.name}' does not provide contacts")

    def fetch_events(self, token: str) -> list[EventRecord]:
        raise ProviderError(f"Provider '{self.name}' does not provide calendars")

    def create_event(self, token: str, event: EventRecord) -> PushResult:
        raise ProviderError(f"Provider '{self.name}' does not accept events")

    def update_event(
        self, token: str, external_id: str, event: EventRecord
    ) -> PushResult:
        raise ProviderError(f"Provider '{self.name}' does not accept events")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


__all__ = [
    "ContactPage",
    "ProviderAdapter",
    "ProviderError",
    "PushResult",
    "UnknownProviderError",
]
