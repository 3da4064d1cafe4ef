"""
API request and response models for SupportDesk REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field names are camelCase where the browser client already expects them
(apiToken, hasToken, isNearExpiry, ...).

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import SessionUser

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ClaimSessionRequest(BaseModel):
    """Request body for POST /api/v1/auth/claim-session."""

    model_config = ConfigDict(str_strip_whitespace=True)

    state: Optional[str] = Field(default=None, max_length=512)


class SaveTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/api-token.

    Both fields are optional at the schema level so a missing field reaches
    the controller and comes back as a 400 validation_error with a useful
    message, not a generic 422 schema failure.
    """

    model_config = ConfigDict(populate_by_name=True)

    api_token: Optional[str] = Field(default=None, alias="apiToken", max_length=8192)
    password: Optional[str] = Field(default=None, max_length=1024)


class UnlockTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/api-token-decrypt."""

    password: Optional[str] = Field(default=None, max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    email: str
    name: str
    role: str
    is_admin: bool = Field(alias="isAdmin")
    is_user: bool = Field(alias="isUser")
    groups: list[str] = Field(default_factory=list)

    @classmethod
    def from_session_user(cls, user: SessionUser) -> "UserResponse":
        return cls.model_validate(user.to_dict())


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    auth_url: str = Field(alias="authUrl")


class ClaimSessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserResponse


class SuccessResponse(BaseModel):
    """Plain acknowledgement for logout and vault operations."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: Optional[str] = None


class SessionUserResponse(BaseModel):
    """Response for session-extend and session-refresh."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserResponse
    message: str


class SessionHealthResponse(BaseModel):
    """Response for GET /api/v1/auth/session-health. Durations are milliseconds."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    user: UserResponse
    session_age: int = Field(alias="sessionAge")
    time_remaining: int = Field(alias="timeRemaining")
    expires_at: str = Field(alias="expiresAt")
    is_near_expiry: bool = Field(alias="isNearExpiry")
    warning_threshold: int = Field(alias="warningThreshold")


class TokenStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    has_token: bool = Field(alias="hasToken")
    is_decrypted: bool = Field(alias="isDecrypted")


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
