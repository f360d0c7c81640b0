"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Eventgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, max_participants -> MAX_PARTICIPANTS).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Dev mode generates a SECRET_KEY with a warning, production mode
      refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC used for one-time code storage both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Sessions must survive restarts in production.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or events/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("eventgate.config")

# Origins always allowed outside production. CLIENT_URL is prepended at runtime.
_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8080",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8080",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    # Empty means "use the SQLite file next to each store module".
    database_url: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_expire_seconds: int = Field(default=12 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Credentials and one-time codes
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=10, ge=4, le=31)
    lockout_threshold: int = Field(default=5, ge=1)
    lockout_seconds: int = Field(default=15 * 60, gt=0)
    otp_expire_seconds: int = Field(default=10 * 60, gt=0)
    otp_max_attempts: int = Field(default=5, ge=1)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    max_participants: int = Field(default=1000, ge=1)
    # "pending": invites to unknown emails wait until the invitee activates.
    # "placeholder": an unverified account without a password is created.
    invite_policy: Literal["pending", "placeholder"] = "pending"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------------

    node_env: str = "development"
    client_url: str = "http://localhost:8080"
    production_client_url: str = ""

    # ------------------------------------------------------------------
    # Code delivery (optional -- empty API key means log-only delivery)
    # ------------------------------------------------------------------

    sendgrid_api_key: str = ""
    mail_from_address: str = "no-reply@eventgate.local"
    mail_from_name: str = "Eventgate"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
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

    @property
    def is_production(self) -> bool:
        return self.node_env == "production"

    def cors_origins(self) -> list[str]:
        """Return the browser origins allowed to call the API.

        Production allows only the production client URL (falling back to
        CLIENT_URL). Every other environment allows CLIENT_URL plus the usual
        localhost dev-server ports.
        """
        if self.is_production:
            return [self.production_client_url or self.client_url]
        origins = [self.client_url]
        origins.extend(o for o in _DEV_ORIGINS if o != self.client_url)
        return origins

    def cors_max_age(self) -> int:
        """Preflight cache lifetime: 24 hours in production, 1 hour elsewhere."""
        return 86400 if self.is_production else 3600


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
