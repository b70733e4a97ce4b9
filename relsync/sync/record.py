"""
Normalized record types shared by providers and the reconciliation engine.

Provides:
- ContactRecord / EventRecord: the provider-neutral shape every adapter
  produces before records reach the resolver
- SourceMetadata: provenance carried by an incoming record
- EntityMetadata: provenance accumulated on a local entity
- Datetime helpers for the ISO 8601 strings stored in the database
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from relsync.utils.normalization import normalize_name


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a datetime from an ISO 8601 string, a date, or a datetime.

    Naive values are treated as UTC. A "Z" suffix is accepted. A bare date
    becomes midnight UTC of that day.

    Raises:
        ValueError: If a string value is not ISO 8601
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported datetime value: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_datetime(value: Any) -> Optional[str]:
    """
    Serialize a datetime as an ISO 8601 UTC string for storage.

    Accepts anything parse_datetime does, so ISO strings and dates are
    normalized the same way as datetimes.

    Raises:
        ValueError: If the value cannot be parsed
    """
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return parsed.isoformat()


_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("", "0", "false", "no", "off")


def parse_bool(value: Any, default: bool = False) -> bool:
    """
    Interpret a feed flag, accepting real booleans and common strings.

    Raises:
        ValueError: If a string is not a recognized boolean
    """
    if value is None:
        return default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    return bool(value)


def _clean(value: Any) -> Optional[str]:
    """Strip a string field, mapping blank values to None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _unique(items: list[Optional[str]]) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


@dataclass
class SourceMetadata:
    """
    Provenance attached to an incoming record by its adapter.

    Attributes:
        source: Provider that produced the record (e.g. "google_contacts")
        sources: All providers that contributed, when an adapter merged
                 several feeds into one record
        external_ids: Provider name -> that provider's id for the record
        photo_url: Profile photo URL, when the provider has one
    """

    source: Optional[str] = None
    sources: list[str] = field(default_factory=list)
    external_ids: dict[str, str] = field(default_factory=dict)
    photo_url: Optional[str] = None

    def provider_names(self) -> list[str]:
        """Providers to union into an entity's sources."""
        if self.sources:
            return _unique(list(self.sources))
        return _unique([self.source])

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> SourceMetadata:
        data = data or {}
        external_ids = data.get("external_ids") or {}
        if not isinstance(external_ids, dict):
            raise ValueError("metadata.external_ids must be a mapping")
        sources = data.get("sources") or []
        if isinstance(sources, str):
            sources = [sources]
        return cls(
            source=_clean(data.get("source")),
            sources=_unique([_clean(s) for s in sources]),
            external_ids={
                str(k): str(v) for k, v in external_ids.items() if v is not None
            },
            photo_url=_clean(data.get("photo_url")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "sources": list(self.sources),
            "external_ids": dict(self.external_ids),
            "photo_url": self.photo_url,
        }


@dataclass
class EntityMetadata:
    """
    Provenance accumulated on a local entity.

    The key set is fixed: which providers have ever contributed, each
    provider's id for the entity, and a photo URL. Values only grow; see
    relsync.sync.provenance.
    """

    sources: list[str] = field(default_factory=list)
    external_ids: dict[str, str] = field(default_factory=dict)
    photo_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> EntityMetadata:
        data = data or {}
        return cls(
            sources=_unique(list(data.get("sources") or [])),
            external_ids=dict(data.get("external_ids") or {}),
            photo_url=data.get("photo_url"),
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> EntityMetadata:
        if not raw:
            return cls()
        return cls.from_dict(json.loads(raw))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sources": list(self.sources),
            "external_ids": dict(self.external_ids),
        }
        if self.photo_url:
            data["photo_url"] = self.photo_url
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass
class ContactRecord:
    """
    Normalized external contact, as produced by a provider adapter.

    Usage:
        record = ContactRecord.from_dict({
            "name": "Jane Smith",
            "email": "jane@example.com",
            "external_id": "people/c123",
            "metadata": {"source": "google_contacts"},
        })
    """

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    organization: Optional[str] = None
    notes: Optional[str] = None
    external_id: Optional[str] = None
    metadata: SourceMetadata = field(default_factory=SourceMetadata)

    @property
    def display_name(self) -> str:
        return normalize_name(self.name)

    @property
    def has_usable_name(self) -> bool:
        return bool(self.display_name)

    @property
    def description(self) -> Optional[str]:
        """Description for a new entity: organization first, then notes."""
        return self.organization or self.notes

    def candidate_external_ids(self) -> list[str]:
        """Every provider-native id this record is known by, primary first."""
        return _unique([self.external_id, *self.metadata.external_ids.values()])

    def completeness_score(self) -> int:
        """Number of populated fields, used to pick a base when de-duplicating."""
        fields = [self.name, self.email, self.phone, self.organization, self.notes]
        score = sum(1 for value in fields if value)
        if self.metadata.photo_url:
            score += 1
        return score

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContactRecord:
        """
        Build a record from the normalized dict shape.

        Raises:
            ValueError: If data is not a mapping or its metadata is malformed
        """
        if not isinstance(data, dict):
            raise ValueError(
                f"Contact record must be a mapping, got {type(data).__name__}"
            )
        return cls(
            name=data.get("name"),
            email=_clean(data.get("email")),
            phone=_clean(data.get("phone")),
            organization=_clean(data.get("organization")),
            notes=_clean(data.get("notes")),
            external_id=_clean(data.get("external_id")),
            metadata=SourceMetadata.from_dict(data.get("metadata")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "organization": self.organization,
            "notes": self.notes,
            "external_id": self.external_id,
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class EventRecord:
    """Normalized external calendar event."""

    title: str
    starts_at: datetime
    ends_at: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    all_day: bool = False
    external_id: Optional[str] = None
    etag: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        """
        Build an event from the normalized dict shape.

        Raises:
            ValueError: If the title or start time is missing or unparsable
        """
        if not isinstance(data, dict):
            raise ValueError(
                f"Event record must be a mapping, got {type(data).__name__}"
            )
        title = _clean(data.get("title"))
        if not title:
            raise ValueError("Event record has no title")
        starts_at = parse_datetime(data.get("starts_at"))
        if starts_at is None:
            raise ValueError(f"Event record '{title}' has no start time")
        return cls(
            title=title,
            starts_at=starts_at,
            ends_at=parse_datetime(data.get("ends_at")),
            description=_clean(data.get("description")),
            location=_clean(data.get("location")),
            all_day=parse_bool(data.get("all_day")),
            external_id=_clean(data.get("external_id")),
            etag=_clean(data.get("etag")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "starts_at": format_datetime(self.starts_at),
            "ends_at": format_datetime(self.ends_at),
            "description": self.description,
            "location": self.location,
            "all_day": self.all_day,
            "external_id": self.external_id,
            "etag": self.etag,
        }


__all__ = [
    "ContactRecord",
    "EntityMetadata",
    "EventRecord",
    "SourceMetadata",
    "format_datetime",
    "parse_bool",
    "parse_datetime",
    "utcnow",
]
