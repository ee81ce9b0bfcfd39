from campusfix.services.comment_service import CommentService
from campusfix.services.event_registration_service import EventRegistrationService
from campusfix.services.stats_service import IssueStats, get_issue_stats
from campusfix.services.submission_service import (
    Attachment,
    SubmissionService,
    WriteResult,
    fallback_purpose_for,
)

__all__ = [
    'Attachment',
    'CommentService',
    'EventRegistrationService',
    'IssueStats',
    'SubmissionService',
    'WriteResult',
    'fallback_purpose_for',
    'get_issue_stats',
]
