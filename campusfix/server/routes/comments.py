"""API routes for the comment thread on an issue."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from campusfix.core.errors import RemoteError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.server.shared import AppServices, get_app_services
from campusfix.storage.data_models.comment import IssueComment

app = APIRouter(prefix='/api')


class CommentRequest(BaseModel):
    user_id: str
    text: str


class CommentResponse(BaseModel):
    id: str
    issue_id: str
    user_id: str
    text: str
    created_at: datetime


def comment_to_response(comment: IssueComment) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        issue_id=comment.issue_id,
        user_id=comment.user_id,
        text=comment.text,
        created_at=comment.created_at,
    )


@app.get('/issues/{issue_id}/comments', response_model=list[CommentResponse])
async def list_comments(
    issue_id: str,
    services: AppServices = Depends(get_app_services),
) -> list[CommentResponse]:
    try:
        comments = await services.comments.list_for_issue(issue_id)
    except RemoteError as e:
        logger.error(f'Error loading comments for issue {issue_id}: {e}')
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail='Error loading comments',
        )
    return [comment_to_response(c) for c in comments]


@app.post(
    '/issues/{issue_id}/comments',
    response_model=list[CommentResponse],
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {'description': 'Empty comment'},
        404: {'description': 'Issue not found'},
        502: {'description': 'The store could not be reached'},
    },
)
async def add_comment(
    issue_id: str,
    request: CommentRequest,
    services: AppServices = Depends(get_app_services),
) -> list[CommentResponse]:
    """Add a comment and return the issue's whole thread, oldest first."""
    try:
        comments = await services.comments.add(issue_id, request.user_id, request.text)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RemoteError as e:
        logger.error(f'Error adding comment to issue {issue_id}: {e}')
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail='Failed to add comment. Please try again.',
        )
    if comments is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f'Issue not found: {issue_id}',
        )
    return [comment_to_response(c) for c in comments]
