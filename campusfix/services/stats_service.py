from __future__ import annotations

from dataclasses import dataclass

from campusfix.storage.data_models.query import Eq, Filter, In
from campusfix.sync.remote_store import RemoteStore

OPEN_ISSUE_STATUSES = ('Pending', 'In Progress')


@dataclass
class IssueStats:
    total: int
    open: int
    resolved: int

    @property
    def resolution_rate(self) -> int:
        """Resolved issues as a whole percentage of all issues."""
        if self.total == 0:
            return 0
        return round(self.resolved / self.total * 100)


async def get_issue_stats(remote_store: RemoteStore, owner_id: str | None = None) -> IssueStats:
    scope = Filter.of(Eq('student_id', owner_id)) if owner_id else Filter()
    total = await remote_store.count('issues', scope)
    open_count = await remote_store.count(
        'issues', scope.with_predicate(In('status', OPEN_ISSUE_STATUSES))
    )
    resolved = await remote_store.count(
        'issues', scope.with_predicate(Eq('status', 'Resolved'))
    )
    return IssueStats(total=total, open=open_count, resolved=resolved)
