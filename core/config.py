"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SupportDesk happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and for keeping the fixture identity mode out of production.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       session cookie -- a short key weakens every session.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [F1] IDENTITY_MODE=fixture logs every visitor in as the fixture admin. It is
       refused outright when ENVIRONMENT=production.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or coordination/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("supportdesk.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'supportdesk_users.db'}"

# PBKDF2 floor for the credential vault. Lower counts make offline brute force
# of a stolen users table cheap.
MIN_KDF_ITERATIONS = 100_000


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model validators enforce
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "development"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Identity provider
    # ------------------------------------------------------------------

    # "oidc" talks to a live provider; "fixture" signs everyone in as the
    # documented fixture user (local development only) [F1].
    identity_mode: Literal["oidc", "fixture"] = "oidc"
    oidc_issuer: str = ""
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_redirect_uri: str = ""
    oidc_scopes: str = "openid profile email groups"
    oidc_timeout_seconds: float = 10.0

    # Directory groups that grant the two non-guest roles.
    admin_group: str = "GRP-L0SUPPORT-ADMIN"
    user_group: str = "GRP-L0SUPPORT-USER"

    # ------------------------------------------------------------------
    # Client application
    # ------------------------------------------------------------------

    client_origin: str = "http://localhost:3000"
    client_error_path: str = "/"

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    session_cookie_name: str = "sessionId"
    session_cookie_secure: bool = True
    session_cookie_httponly: bool = True
    session_cookie_samesite: Literal["lax", "strict", "none"] = "none"
    session_max_age_seconds: int = 24 * 60 * 60
    session_warning_seconds: int = 30 * 60

    # TTL shared by auth_state:{state} and session_transfer:{state} keys.
    handshake_ttl_seconds: int = 300

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # Empty means the in-process memory backend (single worker, dev/tests).
    redis_url: str = ""
    # How often the memory backend drops expired keys. Redis expires its own.
    coordination_purge_interval_seconds: int = 10 * 60
    db_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credential vault
    # ------------------------------------------------------------------

    vault_kdf_iterations: int = MIN_KDF_ITERATIONS
    # When true, revoking a credential also clears the user's salt.
    vault_strict_revoke: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    unlock_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_identity_mode(self) -> "Settings":
        """Keep the fixture identity out of production and catch half-configured OIDC [F1]."""
        if self.identity_mode == "fixture" and self.environment.lower() == "production":
            raise ValueError("IDENTITY_MODE=fixture is not allowed when ENVIRONMENT=production.")
        if self.identity_mode == "oidc" and not self.oidc_configured and not self.debug:
            raise ValueError(
                "OIDC_ISSUER, OIDC_CLIENT_ID, OIDC_CLIENT_SECRET and OIDC_REDIRECT_URI are required "
                "when IDENTITY_MODE=oidc. Set DEBUG=true to start without an identity provider."
            )
        return self

    @model_validator(mode="after")
    def validate_vault(self) -> "Settings":
        if self.vault_kdf_iterations < MIN_KDF_ITERATIONS:
            raise ValueError(f"VAULT_KDF_ITERATIONS must be at least {MIN_KDF_ITERATIONS}.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def oidc_configured(self) -> bool:
        return bool(self.oidc_issuer and self.oidc_client_id and self.oidc_client_secret and self.oidc_redirect_uri)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
