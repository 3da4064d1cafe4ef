"""
auth/sessions.py -- Session Lifecycle Manager and cross-domain claim protocol.

A session is a SessionRecord stored server-side in the coordination store
under sess:{session_id}. The browser holds only the session id, signed with
itsdangerous. An unsigned, tampered, expired or unknown cookie reads as "no
session"; it is never an error.

Login handshake (one state value ties it together):

    login()           session.auth = AttemptInFlight(attempt)
                      auth_state:{state} = attempt              TTL 300s
    handle_callback() take auth_state:{state}                    (once only)
                      state check -> exchange -> introspect -> claims
                      new session (fresh id) = Authenticated(user, tokens)
                      session_transfer:{state} = snapshot       TTL 300s
                      302 -> returnTo?state={state}
    claim_session()   take session_transfer:{state}              (once only)
                      new session on the claiming origin

Security notes:
  [S1] Every take() is atomic, so a state can complete one callback and be
       claimed once. A concurrent second claim gets InvalidOrExpiredState.
  [S2] When the browser still carries its own AttemptInFlight, the callback
       checks against that attempt, not the stored copy, before taking
       anything. A state lifted from another browser's login then fails with
       StateMismatch and leaves auth_state:{state} in place.
  [S3] A successful login always mints a new session id (no fixation).
  [S4] returnTo must be relative or on CLIENT_ORIGIN, else the client origin
       with ?auth=success is used.

handle_callback() never raises. It returns a CallbackResult and the router
turns it into a redirect.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlencode, urlsplit, urlunsplit

from itsdangerous import BadSignature, TimestampSigner
from starlette.concurrency import run_in_threadpool

from auth import activity
from auth.connections import ConnectionRegistry
from auth.models import (
    AttemptInFlight,
    Authenticated,
    AuthorizationAttempt,
    IdentityClaims,
    SessionRecord,
    SessionSnapshot,
    SessionUser,
)
from auth.oidc import CallbackParams, IdentityStrategy, map_claims_to_role, resolve_or_create_user
from auth.store import UserStore
from coordination.store import CoordinationStore, auth_state_key, session_key, session_transfer_key
from core.config import Settings
from core.errors import (
    Forbidden,
    IdentityProviderUnavailable,
    InternalError,
    InvalidOrExpiredState,
    NotAuthenticated,
    StateMismatch,
    SupportDeskError,
    ValidationError,
)

logger = logging.getLogger("supportdesk.auth.sessions")


@dataclass
class CallbackResult:
    """Outcome of a callback: where to send the browser, and the session to bind on success."""

    redirect_url: str
    session: SessionRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def safe_return_to(return_to: str | None, client_origin: str) -> str:
    """[S4] Resolve a post-login target, refusing anything off the client origin."""
    origin = client_origin.rstrip("/")
    default = f"{origin}?auth=success"
    if not return_to:
        return default
    if return_to.startswith("/") and not return_to.startswith(("//", "/\\")):
        return origin + return_to
    parts = urlsplit(return_to)
    if parts.scheme in ("http", "https") and parts.netloc == urlsplit(origin).netloc:
        return return_to
    return default


def append_query(url: str, **params: str) -> str:
    parts = urlsplit(url)
    extra = urlencode(params)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def compute_session_health(session: SessionRecord, warning_seconds: int, now: float) -> dict:
    """Timing report for an authenticated session, all durations in milliseconds.

    isNearExpiry uses a strict comparison: exactly warning_seconds left is
    not yet near expiry.
    """
    age_ms = max(0, round((now - session.created_at) * 1000))
    remaining_ms = max(0, round((session.expires_at - now) * 1000))
    warning_ms = warning_seconds * 1000
    return {
        "isValid": True,
        "user": session.user.to_dict() if session.user else None,
        "sessionAge": age_ms,
        "timeRemaining": remaining_ms,
        "expiresAt": datetime.fromtimestamp(session.expires_at, tz=timezone.utc).isoformat(),
        "isNearExpiry": remaining_ms < warning_ms,
        "warningThreshold": warning_ms,
    }


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Owns every session transition. Constructed once in the app lifespan.

    identity is None when OIDC is selected but not configured; login then
    fails with IdentityProviderUnavailable.
    """

    def __init__(
        self,
        settings: Settings,
        store: CoordinationStore,
        users: UserStore,
        identity: IdentityStrategy | None,
        connections: ConnectionRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.users = users
        self.identity = identity
        self.connections = connections
        self._clock = clock
        self._signer = TimestampSigner(settings.secret_key, salt="supportdesk.session")

    # ------------------------------------------------------------------
    # Cookie <-> session
    # ------------------------------------------------------------------

    def sign(self, session_id: str) -> str:
        return self._signer.sign(session_id).decode("ascii")

    def unsign(self, cookie_value: str | None) -> str | None:
        if not cookie_value:
            return None
        try:
            return self._signer.unsign(cookie_value, max_age=self.settings.session_max_age_seconds).decode("ascii")
        except BadSignature:
            logger.debug("Ignoring session cookie with a bad or expired signature")
            return None

    async def load(self, cookie_value: str | None) -> SessionRecord | None:
        session_id = self.unsign(cookie_value)
        if session_id is None:
            return None
        raw = await self.store.get(session_key(session_id))
        if raw is None:
            return None
        session = SessionRecord.from_dict(json.loads(raw))
        if session.expires_at <= self._clock():
            await self.store.delete(session_key(session_id))
            return None
        return session

    def new_session(self) -> SessionRecord:
        now = self._clock()
        return SessionRecord(
            session_id=secrets.token_urlsafe(32),
            created_at=now,
            renewed_at=now,
            max_age=self.settings.session_max_age_seconds,
        )

    async def save(self, session: SessionRecord, *, new: bool = False) -> None:
        """Write the session. Only a new session may create sess:{id}.

        Saving a session that was destroyed meanwhile (logout, a newer login)
        raises NotAuthenticated instead of bringing it back.
        """
        ttl = max(1, int(session.expires_at - self._clock()))
        written = await self.store.set(
            session_key(session.session_id),
            json.dumps(session.to_dict()),
            ttl=ttl,
            only_if_exists=not new,
        )
        if not written:
            logger.info("Refused to save a session that no longer exists")
            raise NotAuthenticated("Session has ended.")

    async def destroy(self, session: SessionRecord) -> None:
        await self.store.delete(session_key(session.session_id))

    # ------------------------------------------------------------------
    # Login / callback / claim
    # ------------------------------------------------------------------

    async def login(self, session: SessionRecord | None, return_to: str | None) -> tuple[SessionRecord, str]:
        """Start an attempt. Returns the session to bind and the authorization URL."""
        if self.identity is None:
            raise IdentityProviderUnavailable("Identity provider is not configured.")
        attempt, auth_url = self.identity.begin_login(safe_return_to(return_to, self.settings.client_origin))
        fresh = session is None
        session = session or self.new_session()
        session.auth = AttemptInFlight(attempt)
        await self.save(session, new=fresh)
        await self.store.set(
            auth_state_key(attempt.state),
            json.dumps(attempt.to_dict()),
            ttl=self.settings.handshake_ttl_seconds,
        )
        logger.info("Login attempt started (identity=%s)", self.identity.name)
        return session, auth_url

    async def handle_callback(self, session: SessionRecord | None, params: CallbackParams) -> CallbackResult:
        try:
            return await self._complete_callback(session, params)
        except SupportDeskError as exc:
            logger.warning("Login callback failed: %s (%s)", exc.code, exc.message)
            return CallbackResult(redirect_url=self.error_redirect(exc.message), error=exc.message)
        except Exception:
            logger.exception("Unexpected error during login callback")
            message = InternalError.default_message
            return CallbackResult(redirect_url=self.error_redirect(message), error=message)

    async def _complete_callback(self, session: SessionRecord | None, params: CallbackParams) -> CallbackResult:
        if self.identity is None:
            raise IdentityProviderUnavailable("Identity provider is not configured.")
        if not params.state:
            raise ValidationError("Missing state parameter.")

        if session is not None and isinstance(session.auth, AttemptInFlight):
            # [S2] Compared before take() so a foreign state leaves auth_state intact.
            attempt = session.auth.attempt
            if not secrets.compare_digest(params.state, attempt.state):
                raise StateMismatch()
            if await self.store.take(auth_state_key(params.state)) is None:
                raise InvalidOrExpiredState()
        else:
            stored = await self.store.take(auth_state_key(params.state))
            if stored is None:
                raise InvalidOrExpiredState()
            attempt = AuthorizationAttempt.from_dict(json.loads(stored))

        claims = await self.identity.complete_callback(params, attempt)
        user = await self._resolve(claims)

        authenticated = self.new_session()  # [S3]
        authenticated.auth = Authenticated(user, claims.tokens)
        await self.save(authenticated, new=True)
        if session is not None:
            await self.destroy(session)

        snapshot = SessionSnapshot(user=user, tokens=claims.tokens, session_id=authenticated.session_id)
        await self.store.set(
            session_transfer_key(attempt.state),
            json.dumps(snapshot.to_dict()),
            ttl=self.settings.handshake_ttl_seconds,
        )
        activity.record("auth.login", user, role=user.role)
        return_to = attempt.return_to or safe_return_to(None, self.settings.client_origin)
        return CallbackResult(redirect_url=append_query(return_to, state=attempt.state), session=authenticated)

    async def claim_session(self, current: SessionRecord | None, state: str | None) -> SessionRecord:
        """Exchange a one-time state for a new local session. [S1]"""
        if not state:
            raise ValidationError("State parameter is required.")
        raw = await self.store.take(session_transfer_key(state))
        if raw is None:
            raise InvalidOrExpiredState()
        snapshot = SessionSnapshot.from_dict(json.loads(raw))

        session = self.new_session()
        session.auth = Authenticated(snapshot.user, snapshot.tokens)
        await self.save(session, new=True)
        if current is not None:
            await self.destroy(current)
        activity.record("auth.session_claimed", snapshot.user)
        return session

    def error_redirect(self, message: str) -> str:
        base = self.settings.client_origin.rstrip("/") + self.settings.client_error_path
        return append_query(base, auth="error", message=message)

    # ------------------------------------------------------------------
    # Authenticated operations
    # ------------------------------------------------------------------

    @staticmethod
    def current_user(session: SessionRecord | None) -> SessionUser:
        if session is None or session.user is None:
            raise NotAuthenticated()
        return session.user

    async def logout(self, session: SessionRecord | None) -> None:
        """Idempotent: a missing or already-destroyed session is not an error."""
        if session is None:
            return
        user = session.user
        if user is not None:
            self.connections.terminate_user(user.id)
            activity.record("auth.logout", user)
        await self.destroy(session)

    def health(self, session: SessionRecord | None) -> dict:
        self.current_user(session)
        return compute_session_health(session, self.settings.session_warning_seconds, self._clock())

    async def extend(self, session: SessionRecord | None) -> tuple[SessionRecord, str]:
        """Renew max-age. With the fixture identity the user is also re-synthesized."""
        self.current_user(session)
        message = "Session extended successfully"
        fixture = self.identity.rehydrate() if self.identity is not None else None
        if fixture is not None:
            user = await self._resolve(fixture)
            session.auth = Authenticated(user, fixture.tokens)
            message = "Fixture user session extended successfully"
        session.renewed_at = self._clock()
        session.max_age = self.settings.session_max_age_seconds
        await self.save(session)
        activity.record("auth.session_extended", session.user)
        return session, message

    async def refresh(self, session: SessionRecord | None) -> SessionRecord:
        """Rebuild the session from the fixture user. Refused outside fixture mode."""
        fixture = self.identity.rehydrate() if self.identity is not None else None
        if fixture is None:
            raise Forbidden("Session refresh is only available with the fixture identity.")
        user = await self._resolve(fixture)
        fresh = session is None
        session = session or self.new_session()
        session.auth = Authenticated(user, fixture.tokens)
        await self.save(session, new=fresh)
        logger.info("Fixture session refreshed")
        return session

    async def stage_secret(self, session: SessionRecord, plaintext: str | None) -> None:
        """Put (or clear) the decrypted credential on the live session."""
        session.decrypted_secret = plaintext
        await self.save(session)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve(self, claims: IdentityClaims) -> SessionUser:
        role = map_claims_to_role(claims.groups, self.settings.admin_group, self.settings.user_group)
        user = await run_in_threadpool(resolve_or_create_user, self.users, claims.email, claims.display_name, role)
        return SessionUser(
            id=user.user_id,
            email=user.email,
            name=user.display_name,
            role=role,
            groups=list(claims.groups),
        )
