"""API routes for event registrations and dashboard stats."""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from campusfix.core.errors import RegistrationClosedError, RemoteError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.server.routes.submissions import WriteResponse, write_failed
from campusfix.server.shared import AppServices, get_app_services
from campusfix.services.stats_service import get_issue_stats

app = APIRouter(prefix='/api')


class RegistrationRequest(BaseModel):
    user_id: str


class RegisteredEventsResponse(BaseModel):
    user_id: str
    event_ids: list[str]


class IssueStatsResponse(BaseModel):
    total: int
    open: int
    resolved: int
    resolution_rate: int


def _event_not_found(event_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f'Event not found: {event_id}',
    )


@app.post(
    '/events/{event_id}/registrations',
    response_model=WriteResponse,
    responses={
        404: {'description': 'Event not found'},
        409: {'description': 'Registration closed or event full'},
        502: {'description': 'The store could not be reached'},
    },
)
async def register_for_event(
    event_id: str,
    request: RegistrationRequest,
    services: AppServices = Depends(get_app_services),
):
    try:
        found = await services.registrations.register(event_id, request.user_id)
    except RegistrationClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except RemoteError as e:
        logger.error(f'Error registering {request.user_id} for event {event_id}: {e}')
        return write_failed('Could not register for this event. Please try again.')
    if not found:
        raise _event_not_found(event_id)
    return WriteResponse(notifications=['Successfully registered for the event.'])


@app.delete(
    '/events/{event_id}/registrations',
    response_model=WriteResponse,
    responses={
        404: {'description': 'Event not found'},
        409: {'description': 'Event is over'},
        502: {'description': 'The store could not be reached'},
    },
)
async def cancel_registration(
    event_id: str,
    user_id: str,
    services: AppServices = Depends(get_app_services),
):
    try:
        found = await services.registrations.cancel(event_id, user_id)
    except RegistrationClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except RemoteError as e:
        logger.error(f'Error cancelling registration of {user_id} for event {event_id}: {e}')
        return write_failed('Could not cancel the registration. Please try again.')
    if not found:
        raise _event_not_found(event_id)
    return WriteResponse(notifications=['Registration cancelled.'])


@app.get('/users/{user_id}/registrations', response_model=RegisteredEventsResponse)
async def list_registrations(
    user_id: str,
    services: AppServices = Depends(get_app_services),
) -> RegisteredEventsResponse:
    try:
        event_ids = await services.registrations.registered_event_ids(user_id)
    except RemoteError as e:
        logger.error(f'Error loading registrations of {user_id}: {e}')
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail='Error loading registrations',
        )
    return RegisteredEventsResponse(user_id=user_id, event_ids=event_ids)


@app.get('/stats/issues', response_model=IssueStatsResponse)
async def issue_stats(
    owner_id: str | None = None,
    services: AppServices = Depends(get_app_services),
) -> IssueStatsResponse:
    """Counts for the dashboard, optionally for one student's issues."""
    try:
        stats = await get_issue_stats(services.remote_store, owner_id)
    except RemoteError as e:
        logger.error(f'Error loading issue stats: {e}')
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail='Error loading issue stats',
        )
    return IssueStatsResponse(
        total=stats.total,
        open=stats.open,
        resolved=stats.resolved,
        resolution_rate=stats.resolution_rate,
    )
