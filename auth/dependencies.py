"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

The session cookie is the only credential. get_session() resolves it to a
SessionRecord (or None) once per request and caches the result on
request.state, so a route that depends on several helpers reads the store
once.

get_session() is the soft variant (None when there is no session).
require_session() raises NotAuthenticated unless the session holds a user.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request
from starlette.requests import HTTPConnection

from auth.models import SessionRecord
from auth.sessions import SessionManager
from auth.token_vault import TokenVaultController
from core.errors import NotAuthenticated


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_token_vault(request: Request) -> TokenVaultController:
    return request.app.state.token_vault


async def load_session(conn: HTTPConnection) -> SessionRecord | None:
    """Resolve the session cookie on any connection, HTTP or WebSocket."""
    manager: SessionManager = conn.app.state.sessions
    return await manager.load(conn.cookies.get(manager.settings.session_cookie_name))


async def get_session(request: Request) -> SessionRecord | None:
    """Return the caller's session, or None. Never raises for a bad cookie."""
    if not hasattr(request.state, "session"):
        request.state.session = await load_session(request)
    return request.state.session


async def require_session(session: SessionRecord | None = Depends(get_session)) -> SessionRecord:
    """Require an authenticated session. Raises NotAuthenticated (401).

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionRecord = Depends(require_session)): ...
    """
    if session is None or session.user is None:
        raise NotAuthenticated()
    return session
