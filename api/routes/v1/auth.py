"""
api/routes/v1/auth.py -- Login, session and credential-vault REST endpoints.

Routes:
  GET    /api/v1/auth/login?returnTo=      -- start an OIDC attempt; {authUrl}
  GET    /api/v1/auth/callback             -- provider redirect target; always 302
  POST   /api/v1/auth/claim-session        -- trade a one-time state for a session
  GET    /api/v1/auth/user                 -- current user (requires session)
  POST   /api/v1/auth/logout               -- destroy session, clear cookie; idempotent
  GET    /api/v1/auth/session-health       -- expiry report (requires session)
  POST   /api/v1/auth/session-extend       -- renew max-age (requires session)
  POST   /api/v1/auth/session-refresh      -- fixture identity only
  POST   /api/v1/auth/api-token            -- encrypt and store a credential
  GET    /api/v1/auth/api-token            -- {hasToken, isDecrypted}
  POST   /api/v1/auth/api-token-decrypt    -- unlock the stored credential
  DELETE /api/v1/auth/api-token            -- revoke the stored credential

Security:
  [H2] login, claim-session and api-token-decrypt are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that sets or reads session
       material.
  The callback never returns JSON. Failures redirect to the client error
  route with a short message; the reason is logged server-side.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.limiter import limiter, login_limit, unlock_limit
from api.models import (
    ClaimSessionRequest,
    ClaimSessionResponse,
    LoginResponse,
    SaveTokenRequest,
    SessionHealthResponse,
    SessionUserResponse,
    SuccessResponse,
    TokenStatusResponse,
    UnlockTokenRequest,
    UserResponse,
)
from auth.dependencies import get_session, get_session_manager, get_token_vault, require_session
from auth.models import SessionRecord
from auth.oidc import CallbackParams
from auth.sessions import SessionManager
from auth.token_vault import TokenVaultController

# Auth policy:
# - GET    /auth/login, /auth/callback:  public -- they create the session
# - POST   /auth/claim-session:          public -- the one-time state is the credential
# - POST   /auth/logout:                 public -- logging out twice must succeed
# - POST   /auth/session-refresh:        public, but refused unless IDENTITY_MODE=fixture
# - everything else:                     requires an authenticated session (require_session)
router = APIRouter()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_session_cookie(response: Response, manager: SessionManager, session: SessionRecord) -> None:
    settings = manager.settings
    response.set_cookie(
        settings.session_cookie_name,
        value=manager.sign(session.session_id),
        max_age=session.max_age,
        httponly=settings.session_cookie_httponly,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
    )


def _clear_session_cookie(response: Response, manager: SessionManager) -> None:
    settings = manager.settings
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=settings.session_cookie_httponly,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
    )


def _json(model, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=model.model_dump(by_alias=True))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Login handshake
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/login", response_model=LoginResponse)
async def login(
    request: Request,
    returnTo: str | None = None,  # noqa: N803 -- query parameter name used by the client
    session: SessionRecord | None = Depends(get_session),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Start an authorization attempt and return the provider URL to visit."""
    session, auth_url = await manager.login(session, returnTo)
    resp = _json(LoginResponse(auth_url=auth_url))
    _set_session_cookie(resp, manager, session)
    return resp


@router.get("/auth/callback", include_in_schema=False)
async def callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    session: SessionRecord | None = Depends(get_session),
    manager: SessionManager = Depends(get_session_manager),
) -> RedirectResponse:
    """Identity-provider redirect target. Always answers with a 302."""
    result = await manager.handle_callback(session, CallbackParams(code=code, state=state, error=error))
    resp = RedirectResponse(result.redirect_url, status_code=302)
    if result.session is not None:
        _set_session_cookie(resp, manager, result.session)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(login_limit)  # [H2]
@router.post("/auth/claim-session", response_model=ClaimSessionResponse)
async def claim_session(
    request: Request,
    body: ClaimSessionRequest,
    session: SessionRecord | None = Depends(get_session),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Trade the state from the callback redirect for a session on this origin."""
    claimed = await manager.claim_session(session, body.state)
    resp = _json(ClaimSessionResponse(user=UserResponse.from_session_user(claimed.user)))
    _set_session_cookie(resp, manager, claimed)
    return resp


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/auth/user", response_model=UserResponse)
async def current_user(session: SessionRecord = Depends(require_session)) -> JSONResponse:
    return _json(UserResponse.from_session_user(session.user))


@router.post("/auth/logout", response_model=SuccessResponse)
async def logout(
    session: SessionRecord | None = Depends(get_session),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """End the session. Succeeds whether or not a session exists."""
    await manager.logout(session)
    resp = _json(SuccessResponse(message="Logged out."))
    _clear_session_cookie(resp, manager)
    return resp


@router.get("/auth/session-health", response_model=SessionHealthResponse)
async def session_health(
    session: SessionRecord | None = Depends(get_session),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    return _json(SessionHealthResponse.model_validate(manager.health(session)))


@router.post("/auth/session-extend", response_model=SessionUserResponse)
async def session_extend(
    session: SessionRecord | None = Depends(get_session),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    session, message = await manager.extend(session)
    resp = _json(SessionUserResponse(user=UserResponse.from_session_user(session.user), message=message))
    _set_session_cookie(resp, manager, session)
    return resp


@router.post("/auth/session-refresh", response_model=SessionUserResponse)
async def session_refresh(
    session: SessionRecord | None = Depends(get_session),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Re-synthesize the fixture user session. 403 unless IDENTITY_MODE=fixture."""
    session = await manager.refresh(session)
    resp = _json(
        SessionUserResponse(
            user=UserResponse.from_session_user(session.user),
            message="Fixture user session refreshed",
        )
    )
    _set_session_cookie(resp, manager, session)
    return resp


# ---------------------------------------------------------------------------
# Credential vault (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/api-token", response_model=SuccessResponse)
async def save_api_token(
    body: SaveTokenRequest,
    session: SessionRecord = Depends(require_session),
    vault: TokenVaultController = Depends(get_token_vault),
) -> JSONResponse:
    """Encrypt and store the caller's API token. The password is never stored."""
    await vault.save(session, session.user, body.api_token, body.password)
    return _json(SuccessResponse(message="API token saved and decrypted for this session."))


@router.get("/auth/api-token", response_model=TokenStatusResponse)
async def api_token_status(
    session: SessionRecord = Depends(require_session),
    vault: TokenVaultController = Depends(get_token_vault),
) -> JSONResponse:
    status = await vault.status(session, session.user)
    return _json(TokenStatusResponse.model_validate(status))


@limiter.limit(unlock_limit)  # [H2] password guessing
@router.post("/auth/api-token-decrypt", response_model=SuccessResponse)
async def decrypt_api_token(
    request: Request,
    body: UnlockTokenRequest,
    session: SessionRecord = Depends(require_session),
    vault: TokenVaultController = Depends(get_token_vault),
) -> JSONResponse:
    await vault.unlock(session, session.user, body.password)
    return _json(SuccessResponse(message="API token decrypted for this session."))


@router.delete("/auth/api-token", response_model=SuccessResponse)
async def revoke_api_token(
    session: SessionRecord = Depends(require_session),
    vault: TokenVaultController = Depends(get_token_vault),
) -> JSONResponse:
    """Remove the stored credential. No password needed."""
    await vault.revoke(session, session.user)
    return _json(SuccessResponse(message="API token revoked."))
