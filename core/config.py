"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Storegate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Implements the DEBUG-conditional SECRET_KEY rule and checks that
      the refresh buffer leaves room inside the token lifetime.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key weakens every issued session.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Two sets of attempt limits live here:
  lockout_*            -- authoritative, enforced by auth/lockout.py against the
                          account directory.
  client_rate_limit_*  -- advisory, enforced by auth/ratelimit.py in the client.
                          A UX knob; it may diverge from the lockout values.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or audit/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("storegate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'storegate.db'}"

ROLES: tuple[str, ...] = ("admin", "editor", "viewer")


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
    database_url: str = _DEFAULT_DB_URL
    # bcrypt cost factor (4..31). Tests lower it to keep hashing fast.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Provider-controlled token lifetime (60 minutes).
    token_expire_seconds: int = 3600
    # Proactive refresh fires this long before expiry (refresh at minute 45).
    token_refresh_buffer_seconds: int = 900
    # Delay before retrying a failed refresh.
    token_refresh_retry_seconds: int = 60

    # ------------------------------------------------------------------
    # Lockout (authoritative)
    # ------------------------------------------------------------------

    lockout_max_attempts: int = 5
    lockout_minutes: int = 15

    # ------------------------------------------------------------------
    # Client-side attempt limiter (advisory)
    # ------------------------------------------------------------------

    client_rate_limit_attempts: int = 5
    client_rate_limit_minutes: int = 15
    client_rate_limit_capacity: int = 1000

    # ------------------------------------------------------------------
    # Login eligibility
    # ------------------------------------------------------------------

    # Comma-separated list of emails allowed to log in after credential
    # verification. Empty string disables the restriction.
    admin_email_allowlist: str = ""

    # ------------------------------------------------------------------
    # Federated login (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    federated_auto_provision: bool = True
    federated_default_role: str = "viewer"

    # ------------------------------------------------------------------
    # HTTP rate limiting (per client IP, in front of the gateway)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP surface (comma-separated)
    # ------------------------------------------------------------------

    allowed_hosts: str = "localhost,127.0.0.1,*.localhost"
    cors_origins: str = "http://localhost,http://localhost:3000,http://127.0.0.1"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @property
    def client_rate_limit_window(self) -> timedelta:
        return timedelta(minutes=self.client_rate_limit_minutes)

    @property
    def token_lifetime(self) -> timedelta:
        return timedelta(seconds=self.token_expire_seconds)

    @property
    def token_refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_buffer_seconds)

    @property
    def token_refresh_retry(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_retry_seconds)

    @property
    def allowed_admin_emails(self) -> frozenset[str]:
        """Normalized allow-list. Empty set means every verified admin may log in."""
        return frozenset(e.strip().lower() for e in self.admin_email_allowlist.split(",") if e.strip())

    @property
    def allowed_host_list(self) -> list[str]:
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

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

    @model_validator(mode="after")
    def validate_token_timing(self) -> "Settings":
        """The refresh point must land strictly inside the token lifetime."""
        if self.token_expire_seconds <= 0:
            raise ValueError("TOKEN_EXPIRE_SECONDS must be positive.")
        if not 0 <= self.token_refresh_buffer_seconds < self.token_expire_seconds:
            raise ValueError("TOKEN_REFRESH_BUFFER_SECONDS must be >= 0 and shorter than TOKEN_EXPIRE_SECONDS.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.federated_default_role not in ROLES:
            raise ValueError(f"FEDERATED_DEFAULT_ROLE must be one of {ROLES}.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
