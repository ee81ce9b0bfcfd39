"""API routes for the write path: submissions, status changes and deletes.

Failures here never surface as a 500: a store that cannot be reached turns
into a response with ``ok: false`` and a notification for the user.
"""

import json
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from campusfix.core.errors import EntityDecodeError, RemoteError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.server.shared import AppServices, get_app_services
from campusfix.services.submission_service import Attachment, WriteResult
from campusfix.storage.data_models.entity import entity_class_for, entity_to_row

app = APIRouter(prefix='/api')


class WriteResponse(BaseModel):
    ok: bool = True
    entity: dict[str, Any] | None = None
    saved_locally: bool = False
    upload_failed: bool = False
    notifications: list[str] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: str
    priority: str | None = None


def result_to_response(result: WriteResult) -> WriteResponse:
    return WriteResponse(
        entity=entity_to_row(result.entity) if result.entity else None,
        saved_locally=result.saved_locally,
        upload_failed=result.upload_failed,
        notifications=result.notifications,
    )


def write_failed(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content=WriteResponse(ok=False, notifications=[message]).model_dump(),
    )


def _check_collection(collection: str) -> None:
    try:
        entity_class_for(collection)
    except EntityDecodeError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


async def _read_attachment(upload: UploadFile | None) -> Attachment | None:
    if upload is None or not upload.filename:
        return None
    return Attachment(
        filename=upload.filename,
        data=await upload.read(),
        content_type=upload.content_type or 'application/octet-stream',
    )


@app.post(
    '/{collection}',
    response_model=WriteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {'description': 'Submitted (possibly only saved locally)'},
        400: {'description': 'Invalid values'},
        404: {'description': 'Unknown collection'},
    },
)
async def submit(
    collection: str,
    owner_id: str = Form(...),
    values: str = Form('{}'),
    attachment: UploadFile | None = File(None),
    services: AppServices = Depends(get_app_services),
) -> WriteResponse:
    """Create an issue, report or event.

    ``values`` is a JSON object of column values; ``attachment`` is an
    optional image uploaded to the collection's bucket.
    """
    _check_collection(collection)
    try:
        parsed = json.loads(values)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail='values must be JSON'
        )
    if not isinstance(parsed, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail='values must be a JSON object'
        )

    try:
        result = await services.submissions.submit(
            collection, owner_id, parsed, await _read_attachment(attachment)
        )
    except EntityDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return result_to_response(result)


@app.post(
    '/{collection}/{entity_id}/attachment',
    response_model=WriteResponse,
    responses={
        400: {'description': 'Collection has no attachments'},
        404: {'description': 'Unknown collection'},
        502: {'description': 'The store could not be reached'},
    },
)
async def retry_attachment(
    collection: str,
    entity_id: str,
    owner_id: str = Form(...),
    attachment: UploadFile = File(...),
    services: AppServices = Depends(get_app_services),
):
    """Upload the attachment of a submission that went in without it."""
    _check_collection(collection)
    upload = await _read_attachment(attachment)
    if upload is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No file given')
    try:
        result = await services.submissions.retry_upload(
            collection, entity_id, owner_id, upload
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RemoteError as e:
        logger.error(f'Error saving attachment of {collection} {entity_id}: {e}')
        return write_failed('Could not save the attachment. Please try again.')
    return result_to_response(result)


@app.patch(
    '/{collection}/{entity_id}/status',
    response_model=WriteResponse,
    responses={
        400: {'description': 'Unknown status'},
        404: {'description': 'Unknown collection or entity'},
        502: {'description': 'The store could not be reached'},
    },
)
async def update_status(
    collection: str,
    entity_id: str,
    request: StatusUpdateRequest,
    services: AppServices = Depends(get_app_services),
):
    _check_collection(collection)
    try:
        result = await services.submissions.update_status(
            collection, entity_id, request.status, request.priority
        )
    except EntityDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RemoteError as e:
        logger.error(f'Error updating status of {collection} {entity_id}: {e}')
        return write_failed('Could not update the status. Please try again.')
    if not result.found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f'{collection} {entity_id} not found',
        )
    return result_to_response(result)


@app.delete(
    '/{collection}/{entity_id}',
    response_model=WriteResponse,
    responses={
        400: {'description': 'Entity only exists locally'},
        404: {'description': 'Unknown collection'},
        502: {'description': 'The store could not be reached'},
    },
)
async def delete_entity(
    collection: str,
    entity_id: str,
    services: AppServices = Depends(get_app_services),
):
    _check_collection(collection)
    try:
        result = await services.submissions.delete(collection, entity_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RemoteError as e:
        logger.error(f'Error deleting {collection} {entity_id}: {e}')
        return write_failed(f'Could not delete this {collection[:-1]}. Please try again.')
    return result_to_response(result)
