"""
Provenance accumulation for entities.

Every merge folds the incoming record's provenance into the entity's
metadata. Accumulation only ever adds: sources is an ordered union of
provider names, external_ids gains keys it does not have yet (an existing
key is kept), and photo_url is filled only when missing. An entity's
cross-provider linkage therefore grows monotonically across runs, and
providers absent from the current run keep their entries.
"""

from __future__ import annotations

from relsync.sync.record import ContactRecord, EntityMetadata


def incoming_external_ids(record: ContactRecord) -> dict[str, str]:
    """
    Provider -> id pairs carried by an incoming record.

    The record's own external_id is keyed by its source provider, unless
    the metadata map already has an entry for that provider.
    """
    ids = dict(record.metadata.external_ids)
    source = record.metadata.source
    if source and record.external_id:
        ids.setdefault(source, record.external_id)
    return ids


def accumulate(existing: EntityMetadata, record: ContactRecord) -> EntityMetadata:
    """
    Fold a record's provenance into existing entity metadata.

    Args:
        existing: Metadata currently stored on the entity (not modified)
        record: Incoming record

    Returns:
        New EntityMetadata; a superset of existing in every field
    """
    sources = list(existing.sources)
    for provider in record.metadata.provider_names():
        if provider not in sources:
            sources.append(provider)

    external_ids = dict(existing.external_ids)
    for provider, external_id in incoming_external_ids(record).items():
        external_ids.setdefault(provider, external_id)

    return EntityMetadata(
        sources=sources,
        external_ids=external_ids,
        photo_url=existing.photo_url or record.metadata.photo_url,
    )


__all__ = ["accumulate", "incoming_external_ids"]
