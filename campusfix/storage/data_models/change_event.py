"""Row-level change notifications delivered by the change feed."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from campusfix.core.errors import EntityDecodeError
from campusfix.storage.data_models.entity import Entity, decode_row


class ChangeKind(str, Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


@dataclass(frozen=True)
class ChangeEvent:
    """An Insert/Update (carrying the full new row) or a Delete (id only)."""

    kind: ChangeKind
    collection: str
    entity_id: str
    entity: Entity | None = None

    @classmethod
    def insert(cls, entity: Entity) -> ChangeEvent:
        return cls(ChangeKind.INSERT, entity.collection, entity.id, entity)

    @classmethod
    def update(cls, entity: Entity) -> ChangeEvent:
        return cls(ChangeKind.UPDATE, entity.collection, entity.id, entity)

    @classmethod
    def delete(cls, collection: str, entity_id: str) -> ChangeEvent:
        return cls(ChangeKind.DELETE, collection, entity_id)


def change_event_from_payload(collection: str, payload: Any) -> ChangeEvent:
    """Decode a change feed payload of the form ``{eventType, new, old}``."""
    if not isinstance(payload, dict):
        raise EntityDecodeError(f'Change payload must be a mapping, got {type(payload).__name__}')
    try:
        kind = ChangeKind(str(payload.get('eventType', '')).upper())
    except ValueError:
        raise EntityDecodeError(f'Unknown change type {payload.get("eventType")!r}') from None

    if kind is ChangeKind.DELETE:
        old = payload.get('old') or {}
        entity_id = old.get('id') if isinstance(old, dict) else None
        if entity_id is None or entity_id == '':
            raise EntityDecodeError(f'{collection} delete payload carries no id')
        return ChangeEvent.delete(collection, str(entity_id))

    entity = decode_row(collection, payload.get('new'))
    return ChangeEvent(kind, collection, entity.id, entity)
