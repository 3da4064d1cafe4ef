"""
auth/oidc.py -- OIDC authorization-code + PKCE flow engine.

Flow (one AuthorizationAttempt per login):

    Idle -> AttemptStarted -> CodeReceived -> TokenExchanged
         -> TokenValidated -> ClaimsProcessed            (any step -> Failed)

  begin_login()        local only: state, nonce, PKCE pair, authorization URL.
  complete_callback()  state check (no I/O) -> code exchange with the original
                       code_verifier -> introspection of the id token (must
                       say active) -> unverified claim decode -> nonce check.
  map_claims_to_role() total, pure: admin group > user group > guest.
  resolve_or_create_user()  the only place a User is created.

Identity strategies are chosen once at startup by IDENTITY_MODE:
  LiveOIDC     -- a real provider, discovered at startup. Startup fails if
                  discovery fails.
  FixtureUser  -- local development: the same state machine, but the
                  "provider" is this module and the identity is the
                  documented fixture user. Only this strategy can rehydrate
                  a session from nothing; core.config refuses it in
                  production [F1].

Security notes:
  [C1] The state comparison happens before any network call. A mismatch never
       reaches the token endpoint.
  [C2] Introspection fails closed: any status, payload or transport problem
       other than {"active": true} aborts the login.
  [C3] Tokens, code verifiers, nonces and states are never logged.
  Provider failures and timeouts surface as IdentityProviderUnavailable.
  The authorization code is single-use, so nothing here retries.

Layer rule: no imports from api/ or coordination/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_uri
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError

from auth.models import AuthorizationAttempt, IdentityClaims, TokenSet, User
from auth.store import UserStore, new_user_id
from auth.vault import EncryptionVault
from core.config import Settings
from core.errors import (
    AuthorizationDenied,
    IdentityProviderUnavailable,
    StateMismatch,
    ValidationError,
)

logger = logging.getLogger("supportdesk.auth.oidc")

# ---------------------------------------------------------------------------
# Fixture identity (local development only)
# ---------------------------------------------------------------------------

FIXTURE_USER_ID = "dev-admin-user"
FIXTURE_EMAIL = "dev-admin@example.com"
FIXTURE_NAME = "Development Admin"
FIXTURE_CODE = "fixture-code"


@dataclass
class CallbackParams:
    """Query parameters received on the redirect back from the provider."""

    code: str | None = None
    state: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Attempt generation and role mapping (pure)
# ---------------------------------------------------------------------------


def new_attempt(return_to: str | None = None) -> AuthorizationAttempt:
    """Generate a fresh state/nonce/PKCE bundle. No I/O."""
    code_verifier = generate_token(48)
    return AuthorizationAttempt(
        state=secrets.token_urlsafe(32),
        nonce=secrets.token_urlsafe(32),
        code_verifier=code_verifier,
        code_challenge=create_s256_code_challenge(code_verifier),
        return_to=return_to,
    )


def map_claims_to_role(groups: list[str] | None, admin_group: str, user_group: str) -> str:
    """Derive the role from group membership. Never raises."""
    groups = groups or []
    if admin_group in groups:
        return "admin"
    if user_group in groups:
        return "user"
    return "guest"


def check_state(params: CallbackParams, attempt: AuthorizationAttempt) -> None:
    """[C1] Reject a callback whose state does not belong to this attempt."""
    if not params.state or not secrets.compare_digest(params.state, attempt.state):
        logger.warning("Callback rejected: state mismatch")
        raise StateMismatch()
    if params.error:
        logger.warning("Provider returned an authorization error (%s)", params.error[:64])
        raise AuthorizationDenied("Sign-in was cancelled or denied by the identity provider.")
    if not params.code:
        raise ValidationError("Missing authorization code.")


def claims_from_id_token(id_token: str, nonce: str) -> dict:
    """Decode id-token claims without signature verification.

    Only call this after introspection has confirmed the token is live at the
    provider -- that round trip is what vouches for the token.
    """
    try:
        claims = jwt.get_unverified_claims(id_token)
    except JWTError as exc:
        raise IdentityProviderUnavailable("Identity token could not be decoded.") from exc
    token_nonce = claims.get("nonce")
    if token_nonce is not None and not secrets.compare_digest(str(token_nonce), nonce):
        logger.warning("Callback rejected: id token nonce mismatch")
        raise AuthorizationDenied("Identity token nonce mismatch.")
    return claims


def identity_from_claims(claims: dict, tokens: TokenSet) -> IdentityClaims:
    email = claims.get("email")
    if not email:
        raise AuthorizationDenied("Identity token has no email claim.")
    groups = claims.get("groups") or []
    if isinstance(groups, str):
        groups = [groups]
    return IdentityClaims(
        email=email,
        display_name=claims.get("name") or email,
        groups=list(groups),
        tokens=tokens,
        subject=claims.get("sub"),
    )


# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------


class OIDCClient:
    """Thin wrapper over the provider's endpoints.

    Build with OIDCClient.discover() at startup. The discovery document is
    the only state it keeps; each exchange/introspection call opens its own
    AsyncOAuth2Client so concurrent logins never share token state.
    """

    def __init__(
        self,
        metadata: dict,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.metadata = metadata
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.timeout = timeout
        self._transport = transport

    @classmethod
    async def discover(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> OIDCClient:
        """Fetch the issuer's discovery document. Raises IdentityProviderUnavailable on any failure."""
        url = settings.oidc_issuer.rstrip("/") + "/.well-known/openid-configuration"
        try:
            async with httpx.AsyncClient(timeout=settings.oidc_timeout_seconds, transport=transport) as http:
                resp = await http.get(url)
                resp.raise_for_status()
                metadata = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("OIDC discovery failed for %s", url)
            raise IdentityProviderUnavailable("OIDC discovery failed.") from exc
        for key in ("authorization_endpoint", "token_endpoint"):
            if not metadata.get(key):
                raise IdentityProviderUnavailable(f"OIDC discovery document has no {key}.")
        metadata.setdefault("introspection_endpoint", settings.oidc_issuer.rstrip("/") + "/oauth2/v1/introspect")
        logger.info("OIDC client initialized for issuer %s", metadata.get("issuer", settings.oidc_issuer))
        return cls(
            metadata=metadata,
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            redirect_uri=settings.oidc_redirect_uri,
            scopes=settings.oidc_scopes,
            timeout=settings.oidc_timeout_seconds,
            transport=transport,
        )

    def _session(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scopes,
            redirect_uri=self.redirect_uri,
            token_endpoint_auth_method="client_secret_basic",
            timeout=self.timeout,
            transport=self._transport,
        )

    def authorization_url(self, attempt: AuthorizationAttempt) -> str:
        return prepare_grant_uri(
            self.metadata["authorization_endpoint"],
            client_id=self.client_id,
            response_type="code",
            redirect_uri=self.redirect_uri,
            scope=self.scopes,
            state=attempt.state,
            nonce=attempt.nonce,
            code_challenge=attempt.code_challenge,
            code_challenge_method="S256",
        )

    async def exchange_code(self, code: str, code_verifier: str) -> TokenSet:
        try:
            async with self._session() as client:
                token = await client.fetch_token(
                    self.metadata["token_endpoint"],
                    grant_type="authorization_code",
                    code=code,
                    code_verifier=code_verifier,
                )
        except (OAuthError, httpx.HTTPError, ValueError) as exc:
            logger.exception("Authorization code exchange failed")
            raise IdentityProviderUnavailable("Token exchange with the identity provider failed.") from exc
        if not token.get("id_token") or not token.get("access_token"):
            raise IdentityProviderUnavailable("Identity provider returned an incomplete token set.")
        return TokenSet(access_token=token["access_token"], id_token=token["id_token"])

    async def introspect(self, id_token: str) -> dict:
        """[C2] Ask the provider whether the id token is live. Anything but active=true raises."""
        try:
            async with self._session() as client:
                resp = await client.introspect_token(
                    self.metadata["introspection_endpoint"],
                    token=id_token,
                    token_type_hint="id_token",
                )
                resp.raise_for_status()
                data = resp.json()
        except (OAuthError, httpx.HTTPError, ValueError) as exc:
            logger.exception("Token introspection failed")
            raise IdentityProviderUnavailable("Token validation with the identity provider failed.") from exc
        if not isinstance(data, dict) or data.get("active") is not True:
            logger.error("Token validation failed: token not active")
            raise IdentityProviderUnavailable("Identity provider reported the token as inactive.")
        return data


# ---------------------------------------------------------------------------
# Identity strategies
# ---------------------------------------------------------------------------


class IdentityStrategy(ABC):
    name: str = "abstract"

    def begin_login(self, return_to: str | None) -> tuple[AuthorizationAttempt, str]:
        """Return a fresh attempt and the URL the browser should visit."""
        attempt = new_attempt(return_to)
        return attempt, self.authorization_url(attempt)

    @abstractmethod
    def authorization_url(self, attempt: AuthorizationAttempt) -> str:
        ...

    @abstractmethod
    async def complete_callback(self, params: CallbackParams, attempt: AuthorizationAttempt) -> IdentityClaims:
        ...

    def rehydrate(self) -> IdentityClaims | None:
        """Synthesize an identity without a login. Only the fixture strategy does this."""
        return None

    async def close(self) -> None:
        return None


class LiveOIDC(IdentityStrategy):
    name = "oidc"

    def __init__(self, client: OIDCClient) -> None:
        self.client = client

    def authorization_url(self, attempt: AuthorizationAttempt) -> str:
        return self.client.authorization_url(attempt)

    async def complete_callback(self, params: CallbackParams, attempt: AuthorizationAttempt) -> IdentityClaims:
        check_state(params, attempt)
        tokens = await self.client.exchange_code(params.code, attempt.code_verifier)
        introspection = await self.client.introspect(tokens.id_token)
        claims = claims_from_id_token(tokens.id_token, attempt.nonce)
        logger.info("Identity token validated (sub present: %s)", bool(introspection.get("sub")))
        return identity_from_claims(claims, tokens)


class FixtureUser(IdentityStrategy):
    name = "fixture"

    def __init__(self, callback_url: str, admin_group: str, user_group: str) -> None:
        self.callback_url = callback_url
        self.groups = [admin_group, user_group]

    def authorization_url(self, attempt: AuthorizationAttempt) -> str:
        # No provider: send the browser straight back to our own callback.
        return add_params_to_uri(self.callback_url, [("code", FIXTURE_CODE), ("state", attempt.state)])

    async def complete_callback(self, params: CallbackParams, attempt: AuthorizationAttempt) -> IdentityClaims:
        check_state(params, attempt)
        return self._claims()

    def rehydrate(self) -> IdentityClaims | None:
        return self._claims()

    def _claims(self) -> IdentityClaims:
        return IdentityClaims(
            email=FIXTURE_EMAIL,
            display_name=FIXTURE_NAME,
            groups=list(self.groups),
            tokens=TokenSet(access_token="fixture-access-token", id_token="fixture-id-token"),  # noqa: S106
            subject=FIXTURE_USER_ID,
        )


async def build_identity_strategy(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> IdentityStrategy | None:
    """Construct the strategy selected by IDENTITY_MODE.

    Returns None only when OIDC is selected but not configured (allowed in
    DEBUG); login then reports IdentityProviderUnavailable. Discovery errors
    propagate so the application refuses to start.
    """
    if settings.identity_mode == "fixture":
        logger.warning("IDENTITY_MODE=fixture -- every login becomes %s", FIXTURE_EMAIL)
        callback = settings.oidc_redirect_uri or "/api/v1/auth/callback"
        return FixtureUser(callback, settings.admin_group, settings.user_group)
    if not settings.oidc_configured:
        logger.warning("OIDC is not configured -- login will be unavailable")
        return None
    client = await OIDCClient.discover(settings, transport=transport)
    return LiveOIDC(client)


# ---------------------------------------------------------------------------
# Directory resolution
# ---------------------------------------------------------------------------


def resolve_or_create_user(store: UserStore, email: str, display_name: str, role: str) -> User:
    """Find the user by email or create one with a fresh salt and no secret.

    An existing record gets its display name and derived role refreshed when
    they changed. A concurrent first login for the same email loses the
    INSERT race on UNIQUE(email) and re-reads the winner's record.
    """
    user = store.get_by_email(email)
    if user is None:
        logger.info("Creating new user (role=%s)", role)
        try:
            return store.create_user(
                User(
                    user_id=new_user_id(),
                    email=email,
                    display_name=display_name,
                    role=role,
                    salt=EncryptionVault.generate_salt(),
                    encrypted_secret=None,
                )
            )
        except IntegrityError:
            user = store.get_by_email(email)
            if user is None:
                raise
    if user.display_name != display_name or user.role != role:
        store.update_profile(user.user_id, display_name=display_name, role=role)
        user.display_name = display_name
        user.role = role
    return user
