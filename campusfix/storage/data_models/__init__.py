from campusfix.storage.data_models.change_event import ChangeEvent, ChangeKind
from campusfix.storage.data_models.comment import IssueComment, comment_from_row
from campusfix.storage.data_models.entity import (
    Entity,
    Event,
    Issue,
    Report,
    decode_row,
    entity_to_row,
)
from campusfix.storage.data_models.fallback_record import FallbackRecord
from campusfix.storage.data_models.query import (
    Eq,
    Filter,
    In,
    Range,
    Sort,
    TextSearch,
    ViewQuery,
)

__all__ = [
    'ChangeEvent',
    'ChangeKind',
    'Entity',
    'Eq',
    'Event',
    'FallbackRecord',
    'Filter',
    'In',
    'Issue',
    'IssueComment',
    'Range',
    'Report',
    'Sort',
    'TextSearch',
    'ViewQuery',
    'comment_from_row',
    'decode_row',
    'entity_to_row',
]
