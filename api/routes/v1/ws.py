"""
api/routes/v1/ws.py -- Authenticated WebSocket endpoint.

  WS /api/v1/ws  -- accepts only with an authenticated session cookie.
                    Text "ping" is answered with "pong"; anything else is
                    ignored. The socket is registered per user id so logout
                    can close it.

Unauthenticated connections are closed with 4401 before accept.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from auth.connections import ConnectionRegistry
from auth.dependencies import load_session

logger = logging.getLogger("supportdesk.api.ws")

UNAUTHENTICATED_CLOSE_CODE = 4401

router = APIRouter()


@router.websocket("/ws")
async def live_connection(websocket: WebSocket) -> None:
    session = await load_session(websocket)
    if session is None or session.user is None:
        await websocket.close(code=UNAUTHENTICATED_CLOSE_CODE)
        return

    registry: ConnectionRegistry = websocket.app.state.connections
    user_id = session.user.id
    await websocket.accept()
    registry.register(user_id, websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.debug("WebSocket disconnected for user %s", user_id)
    finally:
        registry.unregister(user_id, websocket)
