"""Merging locally mirrored rows into a fetched page.

Mirrored rows go ahead of the remote rows, but never twice: a record is
dropped when the fetch already returned its id, or when it is a local-only
record whose content matches a row the store has since confirmed under a
server id.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from campusfix.storage.data_models.entity import Entity
from campusfix.storage.data_models.fallback_record import FallbackRecord
from campusfix.storage.data_models.query import ViewQuery


def content_key(entity: Entity) -> tuple[Any, ...]:
    """Identify the same submission across the local and server id spaces.

    Submissions carry a client-side ``created_at``, so together with owner and
    title it survives the round trip through the store.
    """
    return (
        entity.collection,
        entity.owner_id,
        entity.created_at,
        getattr(entity, 'title', None),
    )


@dataclass
class MergeResult:
    items: list[Entity]
    # Ids of the mirrored rows placed at the head of ``items``
    pinned_ids: set[str] = field(default_factory=set)


def merge_fallback(
    records: Sequence[FallbackRecord],
    remote_rows: Sequence[Entity],
    query: ViewQuery,
) -> MergeResult:
    if query.offset > 0:
        # Mirrored rows are only shown on the first page
        return MergeResult(list(remote_rows))

    remote_ids = {row.id for row in remote_rows}
    remote_keys = {content_key(row) for row in remote_rows}
    newest_remote: datetime | None = max(
        (row.created_at for row in remote_rows), default=None
    )

    pinned: list[Entity] = []
    seen: set[str] = set()
    for record in records:
        entity = record.entity
        if entity.collection != query.collection or entity.id in seen:
            continue
        if entity.id in remote_ids:
            continue
        if entity.is_local:
            if content_key(entity) in remote_keys:
                continue
        elif newest_remote is not None and entity.created_at <= newest_remote:
            # Confirmed server row that the store did not return on this page:
            # it lives on another page or no longer matches, so leave it out.
            continue
        if not query.filter.matches(entity):
            continue
        seen.add(entity.id)
        pinned.append(entity)

    pinned = query.sort.sorted(pinned)
    return MergeResult(
        items=pinned + list(remote_rows),
        pinned_ids={entity.id for entity in pinned},
    )
