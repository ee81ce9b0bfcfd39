"""API routes for mounting and reading views."""

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from campusfix.core.errors import EntityDecodeError, RemoteError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.server.shared import AppServices, get_app_services
from campusfix.server.view_session_manager import (
    ViewSession,
    ViewSessionManager,
    get_view_session_manager,
)
from campusfix.storage.data_models.entity import entity_class_for, entity_to_row
from campusfix.storage.data_models.query import (
    Eq,
    Filter,
    In,
    Predicate,
    Range,
    Sort,
    TextSearch,
    ViewQuery,
)
from campusfix.sync.list_reconciler import ViewSnapshot

app = APIRouter(prefix='/api')


class PredicateModel(BaseModel):
    """One filter clause, e.g. ``{"op": "eq", "field": "status", "value": "Pending"}``."""

    op: Literal['eq', 'search', 'gt', 'gte', 'lt', 'lte', 'in']
    field: str | None = None
    fields: list[str] | None = None
    value: Any = None
    values: list[Any] | None = None

    def to_predicate(self) -> Predicate:
        if self.op == 'search':
            if not self.fields:
                raise ValueError('search needs at least one field')
            return TextSearch(tuple(self.fields), '' if self.value is None else str(self.value))
        if not self.field:
            raise ValueError(f'{self.op} needs a field')
        if self.op == 'eq':
            return Eq(self.field, self.value)
        if self.op == 'in':
            return In(self.field, tuple(self.values or ()))
        return Range(self.field, self.op, self.value)

    @classmethod
    def from_predicate(cls, predicate: Predicate) -> 'PredicateModel':
        if isinstance(predicate, TextSearch):
            return cls(op='search', fields=list(predicate.fields), value=predicate.term)
        if isinstance(predicate, In):
            return cls(op='in', field=predicate.field, values=list(predicate.values))
        if isinstance(predicate, Range):
            return cls(op=predicate.op, field=predicate.field, value=predicate.value)
        return cls(op='eq', field=predicate.field, value=predicate.value)


class QueryModel(BaseModel):
    collection: str
    filters: list[PredicateModel]
    sort_field: str
    descending: bool
    offset: int
    limit: int


class CreateViewRequest(BaseModel):
    collection: str
    # Scopes the view to one owner and selects whose fallback rows are merged
    owner_id: str | None = None
    filters: list[PredicateModel] = Field(default_factory=list)
    sort_field: str = 'created_at'
    descending: bool = True
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, gt=0)
    use_fallback: bool = False


class ChangeQueryRequest(BaseModel):
    filters: list[PredicateModel] | None = None
    sort_field: str | None = None
    descending: bool | None = None
    offset: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, gt=0)


class ViewResponse(BaseModel):
    view_id: str
    state: str
    items: list[dict[str, Any]]
    total_count: int
    live: bool
    from_fallback: bool
    error: str | None
    query: QueryModel


class EntityResponse(BaseModel):
    collection: str
    entity: dict[str, Any]


def query_to_model(query: ViewQuery) -> QueryModel:
    return QueryModel(
        collection=query.collection,
        filters=[PredicateModel.from_predicate(p) for p in query.filter.predicates],
        sort_field=query.sort.field,
        descending=query.sort.descending,
        offset=query.offset,
        limit=query.limit,
    )


def snapshot_to_response(view_id: str, snapshot: ViewSnapshot) -> ViewResponse:
    return ViewResponse(
        view_id=view_id,
        state=snapshot.state.value,
        items=[entity_to_row(item) for item in snapshot.items],
        total_count=snapshot.total_count,
        live=snapshot.live,
        from_fallback=snapshot.from_fallback,
        error=snapshot.error,
        query=query_to_model(snapshot.query),
    )


def session_to_response(session: ViewSession) -> ViewResponse:
    return snapshot_to_response(session.view_id, session.snapshot())


def _build_filter(filters: list[PredicateModel]) -> Filter:
    try:
        return Filter(tuple(f.to_predicate() for f in filters))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _page_size(services: AppServices, limit: int | None) -> int:
    config = services.config
    return min(limit or config.default_page_size, config.max_page_size)


def _get_session(manager: ViewSessionManager, view_id: str) -> ViewSession:
    session = manager.get(view_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f'View not found: {view_id}',
        )
    return session


@app.post(
    '/views',
    response_model=ViewResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {'description': 'View mounted; its first load has completed'},
        400: {'description': 'Invalid collection or filter'},
    },
)
async def create_view(
    request: CreateViewRequest,
    services: AppServices = Depends(get_app_services),
    manager: ViewSessionManager = Depends(get_view_session_manager),
) -> ViewResponse:
    """Mount a view over one collection."""
    try:
        cls = entity_class_for(request.collection)
    except EntityDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    filter = _build_filter(request.filters)
    if request.owner_id is not None:
        filter = filter.without_field(cls.owner_column).with_predicate(
            Eq(cls.owner_column, request.owner_id)
        )
    query = ViewQuery(
        collection=request.collection,
        filter=filter,
        sort=Sort(request.sort_field, request.descending),
        offset=request.offset,
        limit=_page_size(services, request.limit),
    )
    session = await manager.mount(
        query, owner_id=request.owner_id, use_fallback=request.use_fallback
    )
    return session_to_response(session)


@app.get(
    '/views/{view_id}',
    response_model=ViewResponse,
    responses={404: {'description': 'View not found'}},
)
async def get_view(
    view_id: str,
    manager: ViewSessionManager = Depends(get_view_session_manager),
) -> ViewResponse:
    return session_to_response(_get_session(manager, view_id))


@app.patch(
    '/views/{view_id}/query',
    response_model=ViewResponse,
    responses={
        404: {'description': 'View not found'},
        409: {'description': 'View is in the error state'},
    },
)
async def change_view_query(
    view_id: str,
    request: ChangeQueryRequest,
    services: AppServices = Depends(get_app_services),
    manager: ViewSessionManager = Depends(get_view_session_manager),
) -> ViewResponse:
    """Change the filter, sort or page of a view and reload it."""
    session = _get_session(manager, view_id)
    filter = None
    if request.filters is not None:
        filter = _build_filter(request.filters)
        if session.owner_id is not None:
            owner_column = entity_class_for(session.reconciler.query.collection).owner_column
            filter = filter.without_field(owner_column).with_predicate(
                Eq(owner_column, session.owner_id)
            )
    current_sort = session.reconciler.query.sort
    sort = None
    if request.sort_field is not None or request.descending is not None:
        sort = Sort(
            request.sort_field or current_sort.field,
            current_sort.descending if request.descending is None else request.descending,
        )
    try:
        await session.reconciler.change_query(
            filter=filter,
            sort=sort,
            offset=request.offset,
            limit=_page_size(services, request.limit) if request.limit else None,
        )
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return session_to_response(session)


@app.post(
    '/views/{view_id}/refresh',
    response_model=ViewResponse,
    responses={
        404: {'description': 'View not found'},
        409: {'description': 'View is in the error state'},
    },
)
async def refresh_view(
    view_id: str,
    manager: ViewSessionManager = Depends(get_view_session_manager),
) -> ViewResponse:
    session = _get_session(manager, view_id)
    try:
        await session.reconciler.refresh()
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return session_to_response(session)


@app.post(
    '/views/{view_id}/retry',
    response_model=ViewResponse,
    responses={404: {'description': 'View not found'}},
)
async def retry_view(
    view_id: str,
    manager: ViewSessionManager = Depends(get_view_session_manager),
) -> ViewResponse:
    """Load an errored view again with a fresh reconciler."""
    session = await manager.retry(view_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f'View not found: {view_id}',
        )
    return session_to_response(session)


@app.delete(
    '/views/{view_id}',
    responses={
        200: {'description': 'View unmounted'},
        404: {'description': 'View not found'},
    },
)
async def delete_view(
    view_id: str,
    manager: ViewSessionManager = Depends(get_view_session_manager),
) -> JSONResponse:
    if not await manager.unmount(view_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f'View not found: {view_id}',
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={'message': f'View {view_id} unmounted'},
    )


@app.get(
    '/entities/{collection}/{entity_id}',
    response_model=EntityResponse,
    responses={
        404: {'description': 'No such entity'},
        502: {'description': 'The store could not be reached'},
    },
)
async def get_entity(
    collection: str,
    entity_id: str,
    services: AppServices = Depends(get_app_services),
) -> EntityResponse:
    """Fetch one row for a detail view."""
    try:
        entity_class_for(collection)
        entity = await services.remote_store.fetch_one(collection, entity_id)
    except EntityDecodeError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RemoteError as e:
        logger.error(f'Error loading {collection} {entity_id}: {e}')
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f'Error loading {collection} {entity_id}',
        )
    if entity is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f'{collection} {entity_id} not found',
        )
    return EntityResponse(collection=collection, entity=entity_to_row(entity))
