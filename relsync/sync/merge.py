"""
Merge policy for incoming contact records.

Decides what an incoming record does to the local store:
- No usable name: skipped, before resolution is attempted
- No matching entity: a new entity is created
- Matching entity: a conservative update is merged in

A merge never deletes or blanks existing data. The name is replaced only by
a more complete one, the description is only filled when empty, and
identifiers are only ever added.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from relsync.storage.db import (
    IDENTIFIER_EMAIL,
    IDENTIFIER_PHONE,
    normalize_identifier,
)
from relsync.sync.provenance import accumulate, incoming_external_ids
from relsync.sync.record import EntityMetadata
from relsync.sync.resolver import IdentityResolver, MatchRule
from relsync.utils.logging import get_reconcile_logger
from relsync.utils.normalization import name_completeness

if TYPE_CHECKING:
    from relsync.storage.db import SyncDatabase
    from relsync.sync.record import ContactRecord

logger = logging.getLogger(__name__)


class MergeOutcome(Enum):
    """What happened to one incoming record."""

    CREATED = "created"  # New local record
    MERGED = "merged"  # Matched and folded into an existing record
    SKIPPED = "skipped"  # Rejected or unchanged


@dataclass
class MergeResult:
    """Result of applying one incoming record."""

    outcome: MergeOutcome
    record_id: Optional[int] = None
    rule: MatchRule = MatchRule.NONE
    changed: bool = False
    changes: list[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class EntityUpdate:
    """Attribute-level update computed for a matched entity."""

    name: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[EntityMetadata] = None
    identifiers: list[tuple[str, str]] = field(default_factory=list)

    @property
    def changed_fields(self) -> list[str]:
        fields = [
            key
            for key in ("name", "description", "metadata")
            if getattr(self, key) is not None
        ]
        if self.identifiers:
            fields.append("identifiers")
        return fields


def is_more_complete(candidate: Optional[str], current: Optional[str]) -> bool:
    """
    True if candidate should replace current as a display name.

    More space-separated tokens wins, then more characters. An empty
    candidate never wins, and neither does an equally complete one.
    """
    if not candidate or not candidate.strip():
        return False
    return name_completeness(candidate) > name_completeness(current)


def record_identifiers(record: "ContactRecord") -> list[tuple[str, str]]:
    """(type, value) pairs supplied by a record."""
    identifiers = []
    if record.email:
        identifiers.append((IDENTIFIER_EMAIL, record.email))
    if record.phone:
        identifiers.append((IDENTIFIER_PHONE, record.phone))
    return identifiers


class MergePolicy:
    """
    Applies incoming contact records to the store.

    Usage:
        policy = MergePolicy(db)
        result = policy.apply("user-1", record)
        print(result.outcome)
    """

    def __init__(
        self, db: "SyncDatabase", resolver: Optional[IdentityResolver] = None
    ):
        self.db = db
        self.resolver = resolver or IdentityResolver(db)
        self._reconcile_log = get_reconcile_logger()

    def apply(self, owner_id: str, record: "ContactRecord") -> MergeResult:
        """
        Resolve a record and create or merge accordingly.

        Args:
            owner_id: User who owns the resulting entity
            record: Incoming normalized record

        Returns:
            MergeResult describing the outcome

        Raises:
            sqlite3.Error: On persistence failure; the caller counts it as an
                           error for this record
        """
        if not record.has_usable_name:
            self._reconcile_log.debug(
                f"SKIP: record without a name (email={record.email}, "
                f"external_id={record.external_id})"
            )
            return MergeResult(outcome=MergeOutcome.SKIPPED, reason="missing name")

        resolution = self.resolver.resolve(owner_id, record)
        if resolution.entity is None:
            return self._create(owner_id, record)
        return self._merge(resolution.entity, record, resolution.rule)

    def _create(self, owner_id: str, record: "ContactRecord") -> MergeResult:
        metadata = accumulate(EntityMetadata(), record)
        entity_id = self.db.create_entity(
            owner_id=owner_id,
            name=record.display_name,
            description=record.description,
            metadata=metadata,
            external_id=record.external_id,
            identifiers=record_identifiers(record),
        )
        self._reconcile_log.debug(
            f"CREATED: entity {entity_id} '{record.display_name}' "
            f"from {', '.join(metadata.sources) or 'unknown source'}"
        )
        return MergeResult(
            outcome=MergeOutcome.CREATED,
            record_id=entity_id,
            changed=True,
            changes=["created"],
        )

    def compute_update(
        self, entity: dict[str, Any], record: "ContactRecord"
    ) -> EntityUpdate:
        """
        Work out the conservative update for a matched entity.

        Only differences are returned; an empty EntityUpdate means the
        record adds nothing.
        """
        update = EntityUpdate()

        if is_more_complete(record.display_name, entity["name"]):
            update.name = record.display_name

        if not entity.get("description") and record.description:
            update.description = record.description

        current: EntityMetadata = entity["metadata"]
        merged = accumulate(current, record)
        if merged != current:
            update.metadata = merged

        existing = {
            (row["type"], row["normalized_value"])
            for row in self.db.list_identifiers(entity["id"])
        }
        for identifier_type, value in record_identifiers(record):
            key = (identifier_type, normalize_identifier(identifier_type, value))
            if key[1] and key not in existing:
                update.identifiers.append((identifier_type, value))

        return update

    def _merge(
        self, entity: dict[str, Any], record: "ContactRecord", rule: MatchRule
    ) -> MergeResult:
        update = self.compute_update(entity, record)
        changes = update.changed_fields

        if changes:
            # Identifier uniqueness is re-checked inside the write transaction
            self.db.apply_entity_merge(
                entity["id"],
                name=update.name,
                description=update.description,
                metadata=update.metadata,
                identifiers=update.identifiers,
            )

        self._reconcile_log.debug(
            f"MERGED [{rule.value}]: entity {entity['id']} '{entity['name']}' "
            f"changes={changes or 'none'} "
            f"external_ids={sorted(incoming_external_ids(record))}"
        )
        return MergeResult(
            outcome=MergeOutcome.MERGED,
            record_id=entity["id"],
            rule=rule,
            changed=bool(changes),
            changes=changes,
        )


__all__ = [
    "EntityUpdate",
    "MergeOutcome",
    "MergePolicy",
    "MergeResult",
    "is_more_complete",
    "record_identifiers",
]
