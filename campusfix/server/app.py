from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from campusfix import get_version
from campusfix.core.config import load_campusfix_config
from campusfix.core.errors import RemoteError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.server.routes.comments import app as comments_router
from campusfix.server.routes.events import app as events_router
from campusfix.server.routes.submissions import app as submissions_router
from campusfix.server.routes.views import app as views_router
from campusfix.server.routes.websocket import app as websocket_router
from campusfix.server.shared import AppServices, create_services
from campusfix.server.view_session_manager import (
    initialize_view_session_manager,
    shutdown_view_session_manager,
)


def create_app(services: AppServices | None = None) -> FastAPI:
    """Build the API app. ``services`` defaults to ones built from the config."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        app_services = services or await create_services(load_campusfix_config())
        app.state.services = app_services
        await initialize_view_session_manager(app_services)

        yield

        try:
            await shutdown_view_session_manager()
        finally:
            await app_services.close()

    app = FastAPI(
        title='CampusFix',
        description='CampusFix: live views over campus issues, reports and events',
        version=get_version(),
        lifespan=_lifespan,
    )

    @app.exception_handler(RemoteError)
    async def remote_error_handler(request: Request, exc: RemoteError):
        logger.error(f'Unhandled store error on {request.url.path}: {exc}')
        return JSONResponse(
            status_code=502,
            content={'detail': 'The data store could not be reached'},
        )

    app.include_router(views_router)  # Must be before submissions_router for /views routes
    app.include_router(events_router)
    app.include_router(comments_router)
    app.include_router(submissions_router)
    app.include_router(websocket_router)
    return app
