"""WebSocket endpoint that streams a view's snapshots.

The client receives the current snapshot on connect and one snapshot per
change after that. Sending the text ``refresh`` reloads the view.
"""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from campusfix.core.logger import campusfix_logger as logger
from campusfix.server.routes.views import snapshot_to_response
from campusfix.server.view_session_manager import ViewSession, get_view_session_manager

app = APIRouter(tags=['websocket'])


async def _forward_snapshots(
    websocket: WebSocket, session: ViewSession, stream: asyncio.Queue
) -> None:
    while True:
        snapshot = await stream.get()
        await websocket.send_json(
            snapshot_to_response(session.view_id, snapshot).model_dump(mode='json')
        )


async def _receive_commands(websocket: WebSocket, session: ViewSession) -> None:
    while True:
        message = await websocket.receive_text()
        logger.debug(f'Received message from client: {message[:100]}')
        if message.strip() == 'refresh':
            try:
                await session.reconciler.refresh()
            except RuntimeError as e:
                await websocket.send_json({'error': str(e)})


@app.websocket('/sockets/views/{view_id}')
async def websocket_view(websocket: WebSocket, view_id: str):
    await websocket.accept()
    session = get_view_session_manager().get(view_id)
    if session is None:
        logger.warning(f'WebSocket: view {view_id} not found')
        await websocket.send_json({'error': f'View {view_id} not found'})
        await websocket.close()
        return

    logger.info(f'WebSocket connected for view {view_id}')
    stream = session.open_stream()
    tasks: list[asyncio.Task] = []
    try:
        await websocket.send_json(
            snapshot_to_response(view_id, session.snapshot()).model_dump(mode='json')
        )
        tasks = [
            asyncio.create_task(_forward_snapshots(websocket, session, stream)),
            asyncio.create_task(_receive_commands(websocket, session)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    except WebSocketDisconnect:
        logger.info(f'WebSocket disconnected for view {view_id}')
    finally:
        for task in tasks:
            task.cancel()
        session.close_stream(stream)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
