"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Shepherd Identity happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. refresh_secret_key -> REFRESH_SECRET_KEY).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. JWT signing and
       the token HMAC both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY,
       REFRESH_SECRET_KEY or ENCRYPTION_KEY is a hard startup failure. A
       random ENCRYPTION_KEY would make every stored envelope unreadable
       after a restart.

  [M8] SECRET_KEY and REFRESH_SECRET_KEY must differ. An access token must
       never validate as a refresh token.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("shepherd.config")

_SECRET_FIELDS = ("secret_key", "refresh_secret_key", "encryption_key")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
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
    database_url: str = "sqlite:///shepherd_identity.db"
    # Upper bound (seconds) for a single store call. Passed to the driver as
    # the busy/connect timeout.
    store_timeout_seconds: float = 10.0

    # Empty string is the sentinel for "not configured" on all three secrets.
    secret_key: str = ""
    refresh_secret_key: str = ""
    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 30 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60
    email_verification_ttl_seconds: int = 24 * 60 * 60
    password_reset_ttl_seconds: int = 60 * 60
    # Hardening: refresh tokens must also match the single stored record.
    strict_refresh_rotation: bool = False
    revoke_sessions_on_password_reset: bool = True

    # ------------------------------------------------------------------
    # Credentials and MFA
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    require_email_verification: bool = True
    mfa_issuer: str = "ShepherdApp"

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    admin_email: str = "admin@church.org"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy [M6][M7][M8].

        Dev mode (DEBUG=true): auto-generate each missing secret with a
            warning. Tokens and encrypted fields will not survive restart.

        Production mode: refuse to start if any secret is missing.
        """
        for name in _SECRET_FIELDS:
            value = getattr(self, name)
            env_name = name.upper()
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning("WARNING: Using auto-generated %s. It will not persist across restarts.", env_name)
                else:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{env_name} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must be different.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
