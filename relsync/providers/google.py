"""
Google adapters: People (contacts), Calendar and Gmail.

Provides:
- GoogleContactsAdapter: My Contacts and Other Contacts, page by page
- GoogleCalendarAdapter: two-way sync of the primary calendar
- GoogleAdapter: everything a Google connection can see, aggregated from
  the address book, calendar attendees and mail correspondents

All calls go through _retry_with_backoff, which retries rate limits and
server errors with exponential backoff.
"""

import logging
import re
import time
from collections.abc import Callable
from datetime import timedelta
from email.utils import getaddresses
from typing import Any, Optional

import httplib2
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from relsync.providers.base import (
    ContactPage,
    ProviderAdapter,
    ProviderError,
    PushResult,
)
from relsync.sync.dedup import deduplicate_records
from relsync.sync.pool import DEFAULT_ITEM_TIMEOUT, DEFAULT_MAX_WORKERS, bounded_map
from relsync.sync.record import (
    ContactRecord,
    EventRecord,
    SourceMetadata,
    format_datetime,
    parse_datetime,
    utcnow,
)
from relsync.utils.normalization import normalize_email

logger = logging.getLogger(__name__)

PROVIDER_GOOGLE = "google"
PROVIDER_GOOGLE_CONTACTS = "google_contacts"
PROVIDER_GOOGLE_CALENDAR = "google_calendar"
SOURCE_GMAIL = "gmail"

PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
        "organizations",
        "biographies",
        "photos",
    ]
)
OTHER_CONTACT_FIELDS = "names,emailAddresses,phoneNumbers"

# Cursor prefixes used to walk My Contacts, then Other Contacts
CURSOR_CONNECTIONS = "connections:"
CURSOR_OTHER = "other:"

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds
DEFAULT_CALENDAR_LOOKBACK_DAYS = 365
DEFAULT_GMAIL_MAX_MESSAGES = 200

# Addresses that belong to machines rather than people
AUTOMATED_EMAIL_PATTERN = re.compile(
    r"(noreply|no-reply|donotreply|notifications?|alert|mailer-daemon|"
    r"postmaster|bounce|newsletter|updates)|^support@.*\.com$",
    re.IGNORECASE,
)

# Failures below the HTTP layer (timeouts, DNS, refused connections)
TRANSPORT_ERRORS = (OSError, httplib2.HttpLib2Error, TransportError)

ServiceFactory = Callable[[str, str, str], Any]


def default_service_factory(api: str, version: str, token: str) -> Any:
    """Build a discovery client authorized with a bare bearer token."""
    credentials = Credentials(token=token)
    return build(api, version, credentials=credentials, cache_discovery=False)


def is_automated_email(email: str) -> bool:
    return bool(AUTOMATED_EMAIL_PATTERN.search(email))


class GoogleClient:
    """
    Shared plumbing for the Google adapters.

    Args:
        service_factory: Callable (api, version, token) -> service resource;
                         replaced in tests
        page_size: Items per page when listing
        max_retries: Maximum attempts per API call
        initial_retry_delay: First backoff delay in seconds
        max_retry_delay: Backoff ceiling in seconds
    """

    def __init__(
        self,
        service_factory: Optional[ServiceFactory] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ):
        self.service_factory = service_factory or default_service_factory
        self.page_size = max(1, min(page_size, 1000))  # API max is 1000
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._services: dict[tuple[str, str], Any] = {}

    def service(self, api: str, version: str, token: str) -> Any:
        """Get or create the service object for an API and token."""
        key = (api, token)
        if key not in self._services:
            try:
                self._services[key] = self.service_factory(api, version, token)
            except Exception as e:
                logger.error(f"Failed to create {api} service: {e}")
                raise ProviderError(f"Failed to create {api} service: {e}") from e
        return self._services[key]

    @staticmethod
    def _is_rate_limited(error: HttpError) -> bool:
        status = error.resp.status
        if status == 429:
            return True
        if status == 403:
            reason = str(getattr(error, "reason", "") or "").lower()
            return "rate limit" in reason or "quota" in reason
        return False

    def _retry_with_backoff(
        self, operation: Callable[[], Any], operation_name: str
    ) -> Any:
        """
        Execute an API call, retrying rate limits, server errors and
        network failures.

        Raises:
            ProviderError: When retries are exhausted or the error is not
                           retryable; status carries the HTTP status, or None
                           when the API could not be reached
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            try:
                return operation()
            except HttpError as e:
                status_code = e.resp.status
                retryable = self._is_rate_limited(e) or status_code >= 500

                if retryable and attempt < self.max_retries - 1:
                    logger.warning(
                        f"{operation_name} failed with {status_code}, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                logger.error(f"{operation_name} failed with status {status_code}: {e}")
                raise ProviderError(
                    f"{operation_name} failed: {e}", status=status_code
                ) from e
            except TRANSPORT_ERRORS as e:
                if attempt < self.max_retries - 1:
                    logger.warning(
                        f"{operation_name} could not reach the API ({e}), retrying "
                        f"in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                logger.error(f"{operation_name} could not reach the API: {e}")
                raise ProviderError(f"{operation_name} failed: {e}") from e

        raise ProviderError(f"{operation_name} failed after all retries")


# =============================================================================
# Record conversion
# =============================================================================


def _first_value(items: Optional[list[dict[str, Any]]], key: str = "value") -> Any:
    for item in items or []:
        if item.get(key):
            return item[key]
    return None


def person_to_record(person: dict[str, Any], source: str) -> ContactRecord:
    """
    Convert a People API person into a normalized record.

    Example person::

        {
            'resourceName': 'people/c12345',
            'names': [{'displayName': 'John Doe'}],
            'emailAddresses': [{'value': 'john@example.com'}],
            'organizations': [{'name': 'Acme Corp'}],
        }
    """
    names = person.get("names") or [{}]
    primary_name = names[0]
    name = primary_name.get("displayName")
    if not name:
        parts = [primary_name.get("givenName"), primary_name.get("familyName")]
        name = " ".join(p for p in parts if p) or None

    photo_url = None
    for photo in person.get("photos") or []:
        if photo.get("url") and not photo.get("default"):
            photo_url = photo["url"]
            break

    resource_name = person.get("resourceName")
    return ContactRecord(
        name=name,
        email=_first_value(person.get("emailAddresses")),
        phone=_first_value(person.get("phoneNumbers")),
        organization=_first_value(person.get("organizations"), "name"),
        notes=_first_value(person.get("biographies")),
        external_id=resource_name,
        metadata=SourceMetadata(
            source=source,
            external_ids={source: resource_name} if resource_name else {},
            photo_url=photo_url,
        ),
    )


def calendar_item_to_record(item: dict[str, Any]) -> EventRecord:
    """
    Convert a Calendar API event into a normalized event.

    All-day events carry start.date instead of start.dateTime.

    Raises:
        ValueError: If the item has no usable start
    """
    start = item.get("start") or {}
    end = item.get("end") or {}
    all_day = "date" in start and "dateTime" not in start
    starts_at = parse_datetime(start.get("dateTime") or start.get("date"))
    if starts_at is None:
        raise ValueError(f"Calendar event {item.get('id')} has no start")
    return EventRecord(
        title=(item.get("summary") or "(no title)").strip(),
        starts_at=starts_at,
        ends_at=parse_datetime(end.get("dateTime") or end.get("date")),
        description=item.get("description"),
        location=item.get("location"),
        all_day=all_day,
        external_id=item.get("id"),
        etag=item.get("etag"),
    )


def event_to_calendar_body(event: EventRecord) -> dict[str, Any]:
    """Calendar API request body for a local event."""
    body: dict[str, Any] = {"summary": event.title}
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location

    ends_at = event.ends_at or event.starts_at
    if event.all_day:
        body["start"] = {"date": event.starts_at.date().isoformat()}
        body["end"] = {"date": ends_at.date().isoformat()}
    else:
        body["start"] = {"dateTime": format_datetime(event.starts_at)}
        body["end"] = {"dateTime": format_datetime(ends_at)}
    return body


def _parse_cursor(page_cursor: Optional[str]) -> tuple[str, Optional[str]]:
    if not page_cursor:
        return CURSOR_CONNECTIONS, None
    for prefix in (CURSOR_CONNECTIONS, CURSOR_OTHER):
        if page_cursor.startswith(prefix):
            return prefix, page_cursor[len(prefix) :] or None
    raise ProviderError(f"Invalid page cursor: {page_cursor}")


# =============================================================================
# Adapters
# =============================================================================


class GoogleContactsAdapter(ProviderAdapter):
    """
    Google People API contacts.

    Walks My Contacts first and then Other Contacts; the page cursor
    records which of the two lists the next page belongs to.
    """

    name = PROVIDER_GOOGLE_CONTACTS
    supports_contacts = True

    def __init__(self, client: Optional[GoogleClient] = None):
        self.client = client or GoogleClient()

    @classmethod
    def from_connection(cls, connection, settings=None):
        return cls(client=_client_from_settings(settings))

    def fetch_contacts(
        self, token: str, page_cursor: Optional[str] = None
    ) -> ContactPage:
        """
        Fetch one page of contacts.

        Raises:
            ProviderError: If the request fails
        """
        list_name, page_token = _parse_cursor(page_cursor)
        people = self.client.service("people", "v1", token).people()

        if list_name == CURSOR_CONNECTIONS:
            params: dict[str, Any] = {
                "resourceName": "people/me",
                "personFields": PERSON_FIELDS,
                "pageSize": self.client.page_size,
            }
            if page_token:
                params["pageToken"] = page_token
            response = self.client._retry_with_backoff(
                lambda: people.connections().list(**params).execute(),
                "list_connections",
            )
            items = response.get("connections", [])
            next_token = response.get("nextPageToken")
            next_cursor = (
                f"{CURSOR_CONNECTIONS}{next_token}" if next_token else CURSOR_OTHER
            )
        else:
            other = self.client.service("people", "v1", token).otherContacts()
            other_params: dict[str, Any] = {
                "readMask": OTHER_CONTACT_FIELDS,
                "pageSize": self.client.page_size,
            }
            if page_token:
                other_params["pageToken"] = page_token
            response = self.client._retry_with_backoff(
                lambda: other.list(**other_params).execute(),
                "list_other_contacts",
            )
            items = response.get("otherContacts", [])
            next_token = response.get("nextPageToken")
            next_cursor = f"{CURSOR_OTHER}{next_token}" if next_token else None

        records = []
        for person in items:
            try:
                records.append(person_to_record(person, self.name))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse contact: {e}")
        logger.debug(f"Fetched {len(records)} contacts ({list_name.rstrip(':')})")
        return ContactPage(records=records, next_cursor=next_cursor)

    def fetch_all_contacts(self, token: str) -> list[ContactRecord]:
        """Fetch every page of contacts."""
        records: list[ContactRecord] = []
        cursor: Optional[str] = None
        while True:
            page = self.fetch_contacts(token, cursor)
            records.extend(page.records)
            cursor = page.next_cursor
            if cursor is None:
                return records


class GoogleCalendarAdapter(ProviderAdapter):
    """Primary Google calendar, read and write."""

    name = PROVIDER_GOOGLE_CALENDAR
    supports_calendar = True

    def __init__(
        self,
        client: Optional[GoogleClient] = None,
        lookback_days: int = DEFAULT_CALENDAR_LOOKBACK_DAYS,
        calendar_id: str = "primary",
    ):
        self.client = client or GoogleClient()
        self.lookback_days = lookback_days
        self.calendar_id = calendar_id
        # Listing kept by fetch_attendees for the fetch_events that follows
        self._listing: Optional[tuple[str, list[dict[str, Any]]]] = None

    @classmethod
    def from_connection(cls, connection, settings=None):
        lookback = (
            settings.calendar_lookback_days
            if settings
            else DEFAULT_CALENDAR_LOOKBACK_DAYS
        )
        return cls(client=_client_from_settings(settings), lookback_days=lookback)

    def _list_items(self, token: str, reuse: bool = False) -> list[dict[str, Any]]:
        listing, self._listing = self._listing, None
        if reuse and listing is not None and listing[0] == token:
            logger.debug("Reusing calendar listing from attendee fetch")
            return listing[1]

        events = self.client.service("calendar", "v3", token).events()
        time_min = format_datetime(utcnow() - timedelta(days=self.lookback_days))
        items: list[dict[str, Any]] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {
                "calendarId": self.calendar_id,
                "singleEvents": True,
                "timeMin": time_min,
                "maxResults": self.client.page_size,
            }
            if page_token:
                params["pageToken"] = page_token

            def execute_list(p: dict[str, Any] = params) -> Any:
                return events.list(**p).execute()

            response = self.client._retry_with_backoff(execute_list, "list_events")
            items.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    def fetch_events(self, token: str) -> list[EventRecord]:
        """
        Fetch calendar events from the lookback window onwards.

        Cancelled events and items that cannot be parsed are skipped.
        """
        records = []
        for item in self._list_items(token, reuse=True):
            if item.get("status") == "cancelled":
                continue
            try:
                records.append(calendar_item_to_record(item))
            except ValueError as e:
                logger.warning(f"Skipping calendar event: {e}")
        logger.info(f"Fetched {len(records)} calendar events")
        return records

    def fetch_attendees(self, token: str) -> list[ContactRecord]:
        """
        People invited to the user's events, excluding the user and rooms.

        The listing is kept so a following fetch_events for the same token
        does not list the calendar again.
        """
        items = self._list_items(token)
        self._listing = (token, items)
        records = []
        for item in items:
            for attendee in item.get("attendees") or []:
                email = attendee.get("email")
                if not email or attendee.get("self") or attendee.get("resource"):
                    continue
                records.append(
                    ContactRecord(
                        name=attendee.get("displayName"),
                        email=email,
                        metadata=SourceMetadata(source=self.name),
                    )
                )
        return records

    def create_event(self, token: str, event: EventRecord) -> PushResult:
        events = self.client.service("calendar", "v3", token).events()
        body = event_to_calendar_body(event)
        response = self.client._retry_with_backoff(
            lambda: events.insert(calendarId=self.calendar_id, body=body).execute(),
            "create_event",
        )
        return PushResult(external_id=response["id"], etag=response.get("etag"))

    def update_event(
        self, token: str, external_id: str, event: EventRecord
    ) -> PushResult:
        events = self.client.service("calendar", "v3", token).events()
        body = event_to_calendar_body(event)
        response = self.client._retry_with_backoff(
            lambda: events.patch(
                calendarId=self.calendar_id, eventId=external_id, body=body
            ).execute(),
            f"update_event({external_id})",
        )
        return PushResult(
            external_id=response.get("id", external_id), etag=response.get("etag")
        )


class GmailCorrespondents:
    """
    People the user has exchanged mail with, read from message headers.

    Message details are fetched with bounded concurrency; a message that
    fails or times out is dropped on its own.
    """

    def __init__(
        self,
        client: Optional[GoogleClient] = None,
        max_messages: int = DEFAULT_GMAIL_MAX_MESSAGES,
        max_workers: int = DEFAULT_MAX_WORKERS,
        item_timeout: float = DEFAULT_ITEM_TIMEOUT,
    ):
        self.client = client or GoogleClient()
        self.max_messages = max_messages
        self.max_workers = max_workers
        self.item_timeout = item_timeout

    def fetch(self, token: str) -> list[ContactRecord]:
        """
        Fetch correspondents from recent messages.

        A 403 means the connection was granted without mail scope and
        yields no records.

        Raises:
            ProviderError: For any other failure (including 401)
        """
        messages = self.client.service("gmail", "v1", token).users().messages()
        try:
            response = self.client._retry_with_backoff(
                lambda: messages.list(
                    userId="me",
                    maxResults=min(self.max_messages, 500),
                    q="newer_than:1y",
                ).execute(),
                "list_messages",
            )
        except ProviderError as e:
            if e.status == 403:
                logger.info("Gmail access not granted; skipping mail correspondents")
                return []
            raise

        ids = [m["id"] for m in response.get("messages", []) if m.get("id")]

        def fetch_headers(message_id: str) -> list[dict[str, str]]:
            message = messages.get(
                userId="me",
                id=message_id,
                format="metadata",
                metadataHeaders=["From", "To", "Cc"],
            ).execute()
            return (message.get("payload") or {}).get("headers") or []

        result = bounded_map(
            fetch_headers, ids, max_workers=self.max_workers, timeout=self.item_timeout
        )

        seen: set[str] = set()
        records: list[ContactRecord] = []
        for headers in result.values:
            values = [h.get("value", "") for h in headers]
            for display_name, address in getaddresses(values):
                email = normalize_email(address)
                if not email or "@" not in email or email in seen:
                    continue
                if is_automated_email(email):
                    continue
                seen.add(email)
                records.append(
                    ContactRecord(
                        name=display_name.strip() or None,
                        email=email,
                        external_id=f"{SOURCE_GMAIL}:{email}",
                        metadata=SourceMetadata(source=SOURCE_GMAIL),
                    )
                )
        logger.info(
            f"Found {len(records)} mail correspondents in {len(ids)} messages "
            f"({len(result.errors)} failed)"
        )
        return records


class GoogleAdapter(ProviderAdapter):
    """
    Everything reachable through one Google connection.

    Contacts are aggregated from the address book, calendar attendees and
    mail correspondents. A feed that fails is recorded and skipped; the
    fetch only fails when no feed produced anything.
    """

    name = PROVIDER_GOOGLE
    supports_contacts = True
    supports_calendar = True

    def __init__(
        self,
        contacts: Optional[GoogleContactsAdapter] = None,
        calendar: Optional[GoogleCalendarAdapter] = None,
        gmail: Optional[GmailCorrespondents] = None,
    ):
        self.contacts = contacts or GoogleContactsAdapter()
        self.calendar = calendar or GoogleCalendarAdapter()
        self.gmail = gmail or GmailCorrespondents()

    @classmethod
    def from_connection(cls, connection, settings=None):
        client = _client_from_settings(settings)
        return cls(
            contacts=GoogleContactsAdapter(client=client),
            calendar=GoogleCalendarAdapter(
                client=client,
                lookback_days=(
                    settings.calendar_lookback_days
                    if settings
                    else DEFAULT_CALENDAR_LOOKBACK_DAYS
                ),
            ),
            gmail=GmailCorrespondents(
                client=client,
                max_messages=(
                    settings.gmail_max_messages
                    if settings
                    else DEFAULT_GMAIL_MAX_MESSAGES
                ),
                max_workers=(
                    settings.fan_out_workers if settings else DEFAULT_MAX_WORKERS
                ),
                item_timeout=(
                    settings.fan_out_timeout if settings else DEFAULT_ITEM_TIMEOUT
                ),
            ),
        )

    def fetch_contacts(
        self, token: str, page_cursor: Optional[str] = None
    ) -> ContactPage:
        """
        Fetch and de-duplicate all feeds as a single page.

        Raises:
            ProviderError: If every feed failed
        """
        feeds: list[tuple[str, Callable[[str], list[ContactRecord]]]] = [
            ("contacts", self.contacts.fetch_all_contacts),
            ("calendar", self.calendar.fetch_attendees),
            ("gmail", self.gmail.fetch),
        ]
        records: list[ContactRecord] = []
        errors: list[str] = []

        for feed_name, fetch in feeds:
            try:
                feed_records = fetch(token)
            except ProviderError as e:
                logger.warning(f"Google {feed_name} feed failed: {e}")
                errors.append(f"{feed_name}: {e}")
                continue
            logger.debug(f"Google {feed_name} feed returned {len(feed_records)}")
            records.extend(feed_records)

        if len(errors) == len(feeds):
            raise ProviderError("All Google feeds failed: " + "; ".join(errors))

        return ContactPage(records=deduplicate_records(records), errors=errors)

    def fetch_events(self, token: str) -> list[EventRecord]:
        return self.calendar.fetch_events(token)

    def create_event(self, token: str, event: EventRecord) -> PushResult:
        return self.calendar.create_event(token, event)

    def update_event(
        self, token: str, external_id: str, event: EventRecord
    ) -> PushResult:
        return self.calendar.update_event(token, external_id, event)


def _client_from_settings(settings: Any) -> GoogleClient:
    if settings is None:
        return GoogleClient()
    return GoogleClient(
        page_size=settings.page_size,
        max_retries=settings.api_max_retries,
        initial_retry_delay=settings.api_initial_retry_delay,
        max_retry_delay=settings.api_max_retry_delay,
    )


__all__ = [
    "GmailCorrespondents",
    "GoogleAdapter",
    "GoogleCalendarAdapter",
    "GoogleClient",
    "GoogleContactsAdapter",
    "PROVIDER_GOOGLE",
    "PROVIDER_GOOGLE_CALENDAR",
    "PROVIDER_GOOGLE_CONTACTS",
    "calendar_item_to_record",
    "event_to_calendar_body",
    "is_automated_email",
    "person_to_record",
]
