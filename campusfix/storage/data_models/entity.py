"""Data models for the rows shown in views.

Each collection in the relational store has one dataclass. Rows coming from
the store (or from the fallback cache) go through ``decode_row`` so that a
missing or malformed field fails loudly at the boundary instead of turning up
as ``None`` in a view.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, ClassVar

from campusfix.core.errors import EntityDecodeError

# Prefix for ids minted on this side when a remote write did not happen
LOCAL_ID_PREFIX = 'local-'

ISSUE_STATUSES = ('Pending', 'In Progress', 'Resolved')
EVENT_STATUSES = ('Scheduled', 'Cancelled', 'Completed')

_ISSUE_STATUS_ALIASES = {
    'in_progress': 'In Progress',
    'inprogress': 'In Progress',
    'completed': 'Resolved',
    'done': 'Resolved',
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken to be UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise EntityDecodeError(f'Invalid timestamp {value!r}') from e
    else:
        raise EntityDecodeError(f'Invalid timestamp {value!r}')
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def make_local_id(collection: str) -> str:
    return f'{LOCAL_ID_PREFIX}{collection}-{uuid.uuid4().hex}'


def is_local_id(entity_id: str) -> bool:
    return entity_id.startswith(LOCAL_ID_PREFIX)


@dataclass
class Entity:
    """A row from one collection of the relational store."""

    id: str
    owner_id: str | None
    status: str
    created_at: datetime
    updated_at: datetime | None = None

    collection: ClassVar[str] = ''
    # Column holding the owner id in the store
    owner_column: ClassVar[str] = 'owner_id'
    statuses: ClassVar[tuple[str, ...]] = ()
    default_status: ClassVar[str] = ''
    status_aliases: ClassVar[dict[str, str]] = {}
    timestamp_fields: ClassVar[tuple[str, ...]] = ('created_at', 'updated_at')
    int_fields: ClassVar[tuple[str, ...]] = ()
    bool_fields: ClassVar[tuple[str, ...]] = ()
    # Field holding the uploaded attachment's public URL, if any
    media_field: ClassVar[str | None] = None

    @property
    def version(self) -> datetime:
        """Timestamp of the last known write to this row."""
        return self.updated_at or self.created_at

    @property
    def is_local(self) -> bool:
        return is_local_id(self.id)

    def get_field(self, name: str) -> Any:
        """Read a value by store column name."""
        if name == self.owner_column:
            name = 'owner_id'
        return getattr(self, name, None)

    @classmethod
    def normalize_status(cls, value: Any) -> str:
        if value is None or value == '':
            return cls.default_status
        lowered = str(value).strip().lower()
        for status in cls.statuses:
            if status.lower() == lowered:
                return status
        alias = cls.status_aliases.get(lowered.replace(' ', '_'))
        if alias:
            return alias
        raise EntityDecodeError(f'Unknown {cls.collection} status: {value!r}')


@dataclass
class Issue(Entity):
    """A maintenance issue reported by a student."""

    title: str = ''
    description: str = ''
    location: str | None = None
    category: str | None = None
    priority: str = 'Medium'
    image_url: str | None = None
    upload_pending: bool = False

    collection: ClassVar[str] = 'issues'
    owner_column: ClassVar[str] = 'student_id'
    statuses: ClassVar[tuple[str, ...]] = ISSUE_STATUSES
    default_status: ClassVar[str] = 'Pending'
    status_aliases: ClassVar[dict[str, str]] = _ISSUE_STATUS_ALIASES
    bool_fields: ClassVar[tuple[str, ...]] = ('upload_pending',)
    media_field: ClassVar[str | None] = 'image_url'


@dataclass
class Report(Entity):
    """A general report (complaint, suggestion) with an optional photo."""

    title: str = ''
    description: str = ''
    location: str | None = None
    category: str | None = None
    priority: str = 'Medium'
    photo_url: str | None = None
    upload_pending: bool = False

    collection: ClassVar[str] = 'reports'
    owner_column: ClassVar[str] = 'student_id'
    statuses: ClassVar[tuple[str, ...]] = ISSUE_STATUSES
    default_status: ClassVar[str] = 'Pending'
    status_aliases: ClassVar[dict[str, str]] = _ISSUE_STATUS_ALIASES
    bool_fields: ClassVar[tuple[str, ...]] = ('upload_pending',)
    media_field: ClassVar[str | None] = 'photo_url'


@dataclass
class Event(Entity):
    """A campus event published by an administrator."""

    title: str = ''
    description: str = ''
    location: str | None = None
    category: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    registration_deadline: datetime | None = None
    capacity: int | None = None
    image_url: str | None = None

    collection: ClassVar[str] = 'events'
    owner_column: ClassVar[str] = 'created_by'
    statuses: ClassVar[tuple[str, ...]] = EVENT_STATUSES
    default_status: ClassVar[str] = 'Scheduled'
    timestamp_fields: ClassVar[tuple[str, ...]] = (
        'created_at',
        'updated_at',
        'start_date',
        'end_date',
        'registration_deadline',
    )
    int_fields: ClassVar[tuple[str, ...]] = ('capacity',)
    media_field: ClassVar[str | None] = 'image_url'

    def is_past(self, now: datetime | None = None) -> bool:
        now = now or utc_now()
        end = self.end_date or self.start_date
        return end is not None and end < now

    def is_registration_open(self, now: datetime | None = None) -> bool:
        now = now or utc_now()
        if self.status != 'Scheduled' or self.is_past(now):
            return False
        return self.registration_deadline is None or self.registration_deadline > now


COLLECTIONS: dict[str, type[Entity]] = {
    cls.collection: cls for cls in (Issue, Report, Event)
}


def entity_class_for(collection: str) -> type[Entity]:
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise EntityDecodeError(f'Unknown collection: {collection!r}') from None


def _decode_value(cls: type[Entity], name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in cls.timestamp_fields:
        return parse_timestamp(value)
    if name in cls.int_fields:
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise EntityDecodeError(f'Invalid {name} {value!r}') from e
    if name in cls.bool_fields:
        return bool(value)
    if isinstance(value, (dict, list)):
        raise EntityDecodeError(f'Invalid {name} {value!r}')
    return str(value)


def decode_row(collection: str, row: Any) -> Entity:
    """Validate a raw row and build the collection's entity from it."""
    cls = entity_class_for(collection)
    if not isinstance(row, dict):
        raise EntityDecodeError(f'Expected a mapping for {collection} row, got {type(row).__name__}')

    row_id = row.get('id')
    if row_id is None or row_id == '':
        raise EntityDecodeError(f'{collection} row has no id')
    if not row.get('created_at'):
        raise EntityDecodeError(f'{collection} row {row_id} has no created_at')

    owner = row.get(cls.owner_column, row.get('owner_id'))
    kwargs: dict[str, Any] = {
        'id': str(row_id),
        'owner_id': str(owner) if owner is not None else None,
        'status': cls.normalize_status(row.get('status')),
    }
    for f in fields(cls):
        if f.name in kwargs or f.name not in row:
            continue
        value = _decode_value(cls, f.name, row[f.name])
        if value is None and f.name in cls.bool_fields:
            continue
        kwargs[f.name] = value

    return cls(**kwargs)


def entity_to_row(entity: Entity) -> dict[str, Any]:
    """Convert an entity into a JSON-ready row keyed by store column names."""
    row: dict[str, Any] = {}
    for f in fields(entity):
        value = getattr(entity, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        key = entity.owner_column if f.name == 'owner_id' else f.name
        row[key] = value
    return row
