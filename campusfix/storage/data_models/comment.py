from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from campusfix.core.errors import EntityDecodeError
from campusfix.storage.data_models.entity import parse_timestamp


@dataclass(frozen=True)
class IssueComment:
    """A comment on an issue, stored in the ``issue_comments`` table."""

    id: str
    issue_id: str
    user_id: str
    text: str
    created_at: datetime


def comment_from_row(row: Any) -> IssueComment:
    if not isinstance(row, dict):
        raise EntityDecodeError(f'Comment row must be a mapping, got {type(row).__name__}')
    for name in ('id', 'issue_id', 'user_id'):
        if row.get(name) in (None, ''):
            raise EntityDecodeError(f'Comment row is missing {name}')
    return IssueComment(
        id=str(row['id']),
        issue_id=str(row['issue_id']),
        user_id=str(row['user_id']),
        text=str(row.get('text') or ''),
        created_at=parse_timestamp(row.get('created_at')),
    )
