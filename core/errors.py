"""
core/errors.py -- Error taxonomy shared by every layer.

Each class carries the HTTP status and the stable machine-readable code the
API layer puts in the error envelope. Domain code raises these; only
api/main.py turns them into responses.

Messages are meant for the client. Never interpolate tokens, passwords,
states or plaintext into them.

Layer rule: no imports from api/, auth/, or coordination/.
"""

from __future__ import annotations

from typing import Optional


class SupportDeskError(Exception):
    """Base class for every error the HTTP layer knows how to render."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(SupportDeskError):
    status_code = 400
    code = "validation_error"
    default_message = "Request validation failed."


class NotAuthenticated(SupportDeskError):
    status_code = 401
    code = "not_authenticated"
    default_message = "Not authenticated."


class AuthorizationDenied(SupportDeskError):
    status_code = 401
    code = "authorization_denied"
    default_message = "Authorization denied."


class NotFound(SupportDeskError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class InvalidOrExpiredState(SupportDeskError):
    """A handshake state that is unknown, already used, or past its TTL.

    The three cases share one message on purpose: callers must not be able to
    tell a consumed state from one that never existed.
    """

    status_code = 401
    code = "invalid_or_expired_state"
    default_message = "Invalid or expired state."


class StateMismatch(InvalidOrExpiredState):
    """The callback's state differs from the attempt bound to this browser (CSRF)."""

    default_message = "State mismatch."


class IdentityProviderUnavailable(SupportDeskError):
    status_code = 503
    code = "identity_provider_unavailable"
    default_message = "Identity provider unavailable."


class InternalError(SupportDeskError):
    pass


class Forbidden(SupportDeskError):
    status_code = 403
    code = "forbidden"
    default_message = "This operation is not available."
