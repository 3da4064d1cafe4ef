"""
auth/connections.py -- Registry of live WebSocket connections per user id.

Logout uses terminate_user() to drop every socket the user has open. Close
frames are scheduled as tasks and not awaited, so a slow or dead peer never
delays the logout response.

Layer rule: no imports from api/ or coordination/.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from starlette.websockets import WebSocket

logger = logging.getLogger("supportdesk.auth.connections")

LOGOUT_CLOSE_CODE = 4001


class ConnectionRegistry:
    def __init__(self) -> None:
        self._by_user: dict[str, set[WebSocket]] = defaultdict(set)
        self._pending: set[asyncio.Task] = set()

    def register(self, user_id: str, websocket: WebSocket) -> None:
        self._by_user[user_id].add(websocket)

    def unregister(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self._by_user.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._by_user[user_id]

    def count(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, ()))

    def terminate_user(self, user_id: str) -> int:
        """Schedule a close for every socket of user_id. Returns how many were scheduled."""
        sockets = self._by_user.pop(user_id, set())
        for websocket in sockets:
            task = asyncio.get_running_loop().create_task(self._close(websocket))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        if sockets:
            logger.info("Terminating %d live connection(s) for user %s", len(sockets), user_id)
        return len(sockets)

    async def close_all(self) -> None:
        for user_id in list(self._by_user):
            self.terminate_user(user_id)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    @staticmethod
    async def _close(websocket: WebSocket) -> None:
        try:
            await websocket.close(code=LOGOUT_CLOSE_CODE, reason="Logged out")
        except RuntimeError:
            # Already closed by the peer.
            logger.debug("WebSocket already closed")
