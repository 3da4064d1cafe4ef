"""
auth/models.py -- Domain dataclasses for identity and session entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, the flow engine and the session manager do the work.
The to_dict/from_dict pairs exist because several of these travel through
the coordination store as JSON.

Session auth state is a tagged union, not an object with optional fields:

    NoAttempt | AttemptInFlight(attempt) | Authenticated(user, tokens)

so "tokens present but no login ever happened" cannot be represented.

Layer rule: no imports from api/, coordination/, or core/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Union

ROLES = ("admin", "user", "guest")


@dataclass
class User:
    """A record in the user directory.

    role is derived from group membership at login; users cannot set it.
    salt is generated once and stays with the account. encrypted_secret is
    the salt:iv:ciphertext string, or None when nothing is stored.
    """

    user_id: str
    email: str
    display_name: str
    role: str = "guest"
    salt: str | None = None
    encrypted_secret: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    is_active: bool = True


@dataclass
class AuthorizationAttempt:
    """Per-login PKCE/state/nonce bundle. Consumed exactly once by the callback."""

    state: str
    nonce: str
    code_verifier: str
    code_challenge: str
    return_to: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> AuthorizationAttempt:
        return cls(
            state=data["state"],
            nonce=data["nonce"],
            code_verifier=data["code_verifier"],
            code_challenge=data["code_challenge"],
            return_to=data.get("return_to"),
        )

    def __repr__(self) -> str:
        # Never let verifier/nonce/state leak through a log line or traceback.
        return "AuthorizationAttempt(<redacted>)"


@dataclass
class TokenSet:
    access_token: str
    id_token: str

    def to_dict(self) -> dict:
        return {"access_token": self.access_token, "id_token": self.id_token}

    @classmethod
    def from_dict(cls, data: dict) -> TokenSet:
        return cls(access_token=data["access_token"], id_token=data["id_token"])

    def __repr__(self) -> str:
        return "TokenSet(<redacted>)"


@dataclass
class IdentityClaims:
    """What the flow engine hands to the session manager after a good callback."""

    email: str
    display_name: str
    groups: list[str]
    tokens: TokenSet
    subject: str | None = None


@dataclass
class SessionUser:
    """The user projection embedded in a session and returned to the client."""

    id: str
    email: str
    name: str
    role: str
    groups: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_user(self) -> bool:
        return self.role in ("admin", "user")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "isAdmin": self.is_admin,
            "isUser": self.is_user,
            "groups": list(self.groups),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionUser:
        return cls(
            id=data["id"],
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", "guest"),
            groups=list(data.get("groups") or []),
        )


# ---------------------------------------------------------------------------
# Session auth state (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoAttempt:
    kind: str = field(default="none", init=False)


@dataclass(frozen=True)
class AttemptInFlight:
    attempt: AuthorizationAttempt
    kind: str = field(default="attempt", init=False)


@dataclass(frozen=True)
class Authenticated:
    user: SessionUser
    tokens: TokenSet
    kind: str = field(default="authenticated", init=False)


AuthState = Union[NoAttempt, AttemptInFlight, Authenticated]


def auth_state_to_dict(state: AuthState) -> dict:
    if isinstance(state, AttemptInFlight):
        return {"kind": state.kind, "attempt": state.attempt.to_dict()}
    if isinstance(state, Authenticated):
        return {"kind": state.kind, "user": state.user.to_dict(), "tokens": state.tokens.to_dict()}
    return {"kind": "none"}


def auth_state_from_dict(data: dict | None) -> AuthState:
    kind = (data or {}).get("kind", "none")
    if kind == "attempt":
        return AttemptInFlight(AuthorizationAttempt.from_dict(data["attempt"]))
    if kind == "authenticated":
        return Authenticated(SessionUser.from_dict(data["user"]), TokenSet.from_dict(data["tokens"]))
    return NoAttempt()


@dataclass
class SessionRecord:
    """Server-side session. The browser only ever holds the signed session_id.

    created_at / renewed_at are epoch seconds; the session expires at
    renewed_at + max_age. decrypted_secret is the only place a vault
    plaintext may live, and it dies with the session.
    """

    session_id: str
    created_at: float
    renewed_at: float
    max_age: int
    auth: AuthState = field(default_factory=NoAttempt)
    decrypted_secret: str | None = None

    @property
    def user(self) -> SessionUser | None:
        return self.auth.user if isinstance(self.auth, Authenticated) else None

    @property
    def expires_at(self) -> float:
        return self.renewed_at + self.max_age

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "renewed_at": self.renewed_at,
            "max_age": self.max_age,
            "auth": auth_state_to_dict(self.auth),
            "decrypted_secret": self.decrypted_secret,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionRecord:
        return cls(
            session_id=data["session_id"],
            created_at=float(data["created_at"]),
            renewed_at=float(data.get("renewed_at", data["created_at"])),
            max_age=int(data["max_age"]),
            auth=auth_state_from_dict(data.get("auth")),
            decrypted_secret=data.get("decrypted_secret"),
        )

    def __repr__(self) -> str:
        return f"SessionRecord(session_id={self.session_id!r}, kind={self.auth.kind!r})"


@dataclass
class SessionSnapshot:
    """Short-lived copy of an authenticated session for cross-origin claim."""

    user: SessionUser
    tokens: TokenSet
    session_id: str

    def to_dict(self) -> dict:
        return {"user": self.user.to_dict(), "tokens": self.tokens.to_dict(), "session_id": self.session_id}

    @classmethod
    def from_dict(cls, data: dict) -> SessionSnapshot:
        return cls(
            user=SessionUser.from_dict(data["user"]),
            tokens=TokenSet.from_dict(data["tokens"]),
            session_id=data["session_id"],
        )
