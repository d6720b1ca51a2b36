"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a key with a warning,
      production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256 and
       JWT signing both rely on key entropy -- a short key weakens both.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [R1] on_risk_mfa_unavailable decides what happens when the risk engine asks
       for MFA but the account has nothing enrolled. It defaults to "deny";
       deployments that accept the risk must opt in with "allow".

Services receive the Settings instance at construction so tests can pass a
tailored copy (settings.model_copy(update={...})) without touching the
environment or the lru_cache.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
policy/, federation/, notify/, or ephemeral/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///gatekeeper.db"
    # "memory://" keeps artifacts in-process (single worker only);
    # "redis://host:6379/0" shares them across workers.
    ephemeral_store_url: str = "memory://"

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    jwt_issuer: str = "gatekeeper"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    # ------------------------------------------------------------------
    # Risk and MFA
    # ------------------------------------------------------------------

    on_risk_mfa_unavailable: Literal["allow", "deny"] = "deny"
    risk_timezone: str = "UTC"
    # 0 disables the lockout; the failed-login counters are still kept.
    login_lockout_threshold: int = 0
    totp_issuer_name: str = "Gatekeeper"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    public_base_url: str = "http://localhost:8000"
    login_url: str = "/login"
    password_reset_url: str = ""
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = []
    trust_forwarded_for: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    token_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    # Password policy for register, reset and the create-user command.
    password_min_length: int = 8
    password_require_uppercase: bool = False
    password_require_lowercase: bool = False
    password_require_numbers: bool = False
    password_require_special: bool = False

    # ------------------------------------------------------------------
    # Federation
    # ------------------------------------------------------------------

    oauth2_code_ttl_seconds: int = 600
    oauth2_access_token_ttl_seconds: int = 3600
    oauth2_refresh_token_ttl_seconds: int = 7 * 24 * 3600
    cas_ticket_ttl_seconds: int = 300
    saml_clock_skew_seconds: int = 300

    # ------------------------------------------------------------------
    # Background delivery (notifications + webhooks)
    # ------------------------------------------------------------------

    notification_gateway_url: str = ""
    event_webhook_urls: list[str] = []
    event_webhook_secret: str = ""
    delivery_workers: int = 2
    delivery_queue_size: int = 1000
    delivery_max_attempts: int = 3
    delivery_timeout_seconds: float = 10.0
    delivery_backoff_seconds: float = 0.5

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_token_expire_seconds(self) -> int:
        return self.access_token_expire_minutes * 60

    @property
    def refresh_token_expire_seconds(self) -> int:
        return self.refresh_token_expire_days * 24 * 3600

    @property
    def reset_link_base(self) -> str:
        return self.password_reset_url or f"{self.public_base_url.rstrip('/')}/reset-password"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

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
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
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


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
