"""
De-duplication of records within one aggregated feed.

When an adapter merges several feeds (address book, calendar attendees,
mail correspondents) the same person usually appears more than once. Records
are grouped by the strongest key they have:

    email:<lowercased email>
    phone:<digits>
    name:<normalized name>
    id:<external id>

and each group collapses into one record built on its most complete
member. Records with none of these keys pass through untouched.
"""

import logging
from collections.abc import Iterable
from typing import Optional

from relsync.sync.record import ContactRecord, SourceMetadata
from relsync.utils.normalization import (
    normalize_email,
    normalize_name,
    normalize_string,
    phone_digits,
)

logger = logging.getLogger(__name__)


def dedup_key(record: ContactRecord) -> Optional[str]:
    """Grouping key for a record, or None if it has nothing to group on."""
    email = normalize_email(record.email)
    if email:
        return f"email:{email}"
    digits = phone_digits(record.phone)
    if digits:
        return f"phone:{digits}"
    name = normalize_string(record.name, remove_spaces=False)
    if name:
        return f"name:{name}"
    if record.external_id:
        return f"id:{record.external_id}"
    return None


def find_best_name(records: Iterable[ContactRecord]) -> Optional[str]:
    """Most complete name in a group: most words, then longest."""
    names = [normalize_name(r.name) for r in records if normalize_name(r.name)]
    if not names:
        return None
    return max(names, key=lambda n: (len(n.split()), len(n)))


def merge_group(group: list[ContactRecord]) -> ContactRecord:
    """
    Collapse records describing one person into a single record.

    The most complete record is the base. Missing scalar fields are filled
    from the others, and sources and external ids are unioned.
    """
    if len(group) == 1:
        return group[0]

    ordered = sorted(group, key=lambda r: r.completeness_score(), reverse=True)
    base = ordered[0]

    sources: list[str] = []
    external_ids: dict[str, str] = {}
    for record in ordered:
        for provider in record.metadata.provider_names():
            if provider not in sources:
                sources.append(provider)
        for provider, external_id in record.metadata.external_ids.items():
            external_ids.setdefault(provider, external_id)
        if record.metadata.source and record.external_id:
            external_ids.setdefault(record.metadata.source, record.external_id)

    def first(attr: str) -> Optional[str]:
        for record in ordered:
            value = getattr(record, attr)
            if value:
                return value
        return None

    return ContactRecord(
        name=find_best_name(ordered) or base.name,
        email=base.email or first("email"),
        phone=base.phone or first("phone"),
        organization=base.organization or first("organization"),
        notes=base.notes or first("notes"),
        external_id=base.external_id or first("external_id"),
        metadata=SourceMetadata(
            source=base.metadata.source,
            sources=sources,
            external_ids=external_ids,
            photo_url=base.metadata.photo_url
            or next(
                (r.metadata.photo_url for r in ordered if r.metadata.photo_url),
                None,
            ),
        ),
    )


def deduplicate_records(records: Iterable[ContactRecord]) -> list[ContactRecord]:
    """
    Collapse duplicate records in a feed, keeping first-seen order.

    Args:
        records: Records from one or more feeds

    Returns:
        One record per group, followed by records that had no key
    """
    groups: dict[str, list[ContactRecord]] = {}
    ungrouped: list[ContactRecord] = []
    total = 0
    for record in records:
        total += 1
        key = dedup_key(record)
        if key is None:
            ungrouped.append(record)
        else:
            groups.setdefault(key, []).append(record)

    merged = [merge_group(group) for group in groups.values()]
    result = merged + ungrouped
    if len(result) < total:
        logger.debug(f"De-duplicated {total} records into {len(result)}")
    return result


__all__ = ["dedup_key", "deduplicate_records", "find_best_name", "merge_group"]
