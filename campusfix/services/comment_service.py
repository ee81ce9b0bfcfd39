from __future__ import annotations

from campusfix.core.errors import EntityDecodeError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.storage.data_models.comment import IssueComment, comment_from_row
from campusfix.storage.data_models.entity import utc_now
from campusfix.storage.data_models.query import Eq, Filter
from campusfix.sync.remote_store import RemoteStore

COMMENTS_TABLE = 'issue_comments'


class CommentService:
    def __init__(self, remote_store: RemoteStore):
        self.remote_store = remote_store

    async def list_for_issue(self, issue_id: str) -> list[IssueComment]:
        """Comments on an issue, oldest first."""
        rows = await self.remote_store.fetch_rows(
            COMMENTS_TABLE, Filter.of(Eq('issue_id', issue_id))
        )
        comments = []
        for row in rows:
            try:
                comments.append(comment_from_row(row))
            except EntityDecodeError as e:
                logger.warning(f'Skipping malformed comment on issue {issue_id}: {e}')
        return sorted(comments, key=lambda c: c.created_at)

    async def add(self, issue_id: str, user_id: str, text: str) -> list[IssueComment] | None:
        """Add a comment and return the issue's comments.

        Returns None if there is no such issue.
        """
        text = text.strip()
        if not text:
            raise ValueError('Comment text is required')
        if await self.remote_store.fetch_one('issues', issue_id) is None:
            return None
        await self.remote_store.insert_row(
            COMMENTS_TABLE,
            {
                'issue_id': issue_id,
                'user_id': user_id,
                'text': text,
                'created_at': utc_now().isoformat(),
            },
        )
        logger.info(f'User {user_id} commented on issue {issue_id}')
        return await self.list_for_issue(issue_id)
