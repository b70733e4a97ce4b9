"""
Identity resolution for incoming contact records.

Finds the one existing entity an external record most plausibly refers to,
using a strict fallback chain where the first rule that hits wins:

1. Previously recorded external id (primary id or any provider's id)
2. Normalized email across the owner's email identifiers
3. Normalized phone across the owner's phone identifiers
4. Exact display name after trimming (case-sensitive, last resort)

There is deliberately no fuzzy name matching for contacts.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from relsync.storage.db import IDENTIFIER_EMAIL, IDENTIFIER_PHONE
from relsync.utils.logging import get_reconcile_logger

if TYPE_CHECKING:
    from relsync.storage.db import SyncDatabase
    from relsync.sync.record import ContactRecord

logger = logging.getLogger(__name__)


class MatchRule(Enum):
    """Which rule of the chain resolved a record."""

    EXTERNAL_ID = "external_id"  # Recorded provider-native id
    EMAIL = "email"  # Shared normalized email
    PHONE = "phone"  # Shared normalized phone
    NAME = "name"  # Identical trimmed display name
    TITLE_WINDOW = "title_window"  # Same event title, start within the window
    NONE = "none"  # No existing entity


@dataclass
class Resolution:
    """Result of resolving one record."""

    rule: MatchRule
    entity: Optional[dict[str, Any]] = None
    matched_on: list[str] = field(default_factory=list)

    @property
    def is_match(self) -> bool:
        return self.entity is not None


class IdentityResolver:
    """
    Resolves incoming contact records to existing entities.

    Usage:
        resolver = IdentityResolver(db)
        resolution = resolver.resolve("user-1", record)
        if resolution.is_match:
            entity_id = resolution.entity["id"]
    """

    def __init__(self, db: "SyncDatabase"):
        self.db = db
        self._reconcile_log = get_reconcile_logger()

    def resolve(self, owner_id: str, record: "ContactRecord") -> Resolution:
        """
        Find the entity a record refers to.

        Args:
            owner_id: User whose entities are searched
            record: Incoming normalized record

        Returns:
            Resolution with the matched entity, or rule NONE
        """
        for external_id in record.candidate_external_ids():
            entity = self.db.find_entity_by_external_id(owner_id, external_id)
            if entity:
                return self._matched(record, MatchRule.EXTERNAL_ID, entity, external_id)

        if record.email:
            entity = self.db.find_entity_by_identifier(
                owner_id, IDENTIFIER_EMAIL, record.email
            )
            if entity:
                return self._matched(record, MatchRule.EMAIL, entity, record.email)

        if record.phone:
            entity = self.db.find_entity_by_identifier(
                owner_id, IDENTIFIER_PHONE, record.phone
            )
            if entity:
                return self._matched(record, MatchRule.PHONE, entity, record.phone)

        if record.has_usable_name:
            entity = self.db.find_entity_by_name(owner_id, record.display_name)
            if entity:
                return self._matched(
                    record, MatchRule.NAME, entity, record.display_name
                )

        self._reconcile_log.debug(
            f"NO MATCH: '{record.display_name}' "
            f"(email={record.email}, phone={record.phone}, "
            f"external_id={record.external_id})"
        )
        return Resolution(rule=MatchRule.NONE)

    def _matched(
        self,
        record: "ContactRecord",
        rule: MatchRule,
        entity: dict[str, Any],
        value: str,
    ) -> Resolution:
        self._reconcile_log.debug(
            f"MATCH [{rule.value}]: '{record.display_name}' -> "
            f"entity {entity['id']} '{entity['name']}' on {value}"
        )
        return Resolution(rule=rule, entity=entity, matched_on=[value])


__all__ = ["IdentityResolver", "MatchRule", "Resolution"]
