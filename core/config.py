"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccessGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): field names map to env var names
      (auth_secret -> AUTH_SECRET, trusted_proxy_hops -> TRUSTED_PROXY_HOPS).
      Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. AUTH_SECRET is mandatory in every environment; there is no
      generated fallback key, because sessions minted with a throwaway key
      silently break on restart.

Security notes:
  AUTH_SECRET shorter than 32 chars is rejected outright. Session signing, OTP
  code hashing, rate-limit key hashing and audit network hashing all key
  HMAC-SHA256 with it.

  DATABASE_SSL_ALLOW_INSECURE is refused in production.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accessgate.config")

_DEV_CONSOLE_ONLY_EMAIL = "mock@email.com"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field except auth_secret has a default, so tests only need to set
    AUTH_SECRET (and usually ENVIRONMENT=test) before the first import.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: Literal["development", "test", "production"] = "development"
    # Empty string is the "not configured" sentinel; the validator refuses it.
    auth_secret: str = ""
    public_base_url: str = ""
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_ttl_seconds: int = 8 * 60 * 60

    # ------------------------------------------------------------------
    # One-time passcodes
    # ------------------------------------------------------------------

    otp_length: int = 6
    otp_ttl_minutes: int = 10
    otp_max_attempts: int = 5

    # ------------------------------------------------------------------
    # OTP email delivery (empty string means "not configured")
    # ------------------------------------------------------------------

    otp_email_provider: str = ""
    otp_console_only_email: str = ""
    otp_from_email: str = ""
    resend_api_key: str = ""
    resend_from_email: str = ""
    brevo_api_key: str = ""
    brevo_from_email: str = ""
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Client network identity
    # ------------------------------------------------------------------

    trusted_proxy_header: str = ""
    trusted_proxy_hops: int = 1

    # ------------------------------------------------------------------
    # Rate limiting (fixed windows, seconds)
    # ------------------------------------------------------------------

    otp_request_email_limit: int = 1
    otp_request_email_window: int = 60
    otp_request_ip_limit: int = 10
    otp_request_ip_window: int = 15 * 60
    otp_request_subnet_limit: int = 30
    otp_request_subnet_window: int = 15 * 60
    otp_verify_email_limit: int = 10
    otp_verify_email_window: int = 15 * 60
    otp_verify_ip_limit: int = 30
    otp_verify_ip_window: int = 15 * 60
    invite_activate_ip_limit: int = 20
    invite_activate_ip_window: int = 15 * 60

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    invite_default_hours: int = 72
    invite_max_hours: int = 720

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    database_url: str = "sqlite+aiosqlite:///./accessgate.db"
    database_ssl: Literal["disable", "require", "verify"] = "disable"
    database_ssl_ca_cert: str = ""
    database_ssl_allow_insecure: bool = False

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cookie_secure(self) -> bool:
        """Session cookies are always Secure in production."""
        return self.secure_cookies or self.is_production

    @property
    def resolved_email_provider(self) -> str:
        """Configured delivery provider, defaulting to console outside production."""
        provider = self.otp_email_provider.strip().lower()
        if provider:
            return provider
        return "" if self.is_production else "console"

    @property
    def resolved_console_only_email(self) -> str:
        """Address whose codes always go to the console, in any environment."""
        configured = self.otp_console_only_email.strip().lower()
        if configured:
            return configured
        return "" if self.is_production else _DEV_CONSOLE_ONLY_EMAIL

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_security(self) -> "Settings":
        """Refuse to start with an unsafe configuration.

        AUTH_SECRET: required and at least 32 characters in every environment.
        TRUSTED_PROXY_HOPS: must not be negative.
        DATABASE_SSL_ALLOW_INSECURE: forbidden in production.
        """
        if not self.auth_secret:
            raise ValueError(
                "AUTH_SECRET is required. Set AUTH_SECRET in your environment or .env file "
                "(at least 32 characters, e.g. the output of `openssl rand -hex 32`)."
            )
        if len(self.auth_secret) < 32:
            raise ValueError("AUTH_SECRET must be at least 32 characters.")
        if self.trusted_proxy_hops < 0:
            raise ValueError("TRUSTED_PROXY_HOPS must be zero or a positive integer.")
        if self.is_production and self.database_ssl_allow_insecure:
            raise ValueError("DATABASE_SSL_ALLOW_INSECURE is not allowed in production.")
        if self.invite_max_hours < 1 or self.invite_default_hours < 1:
            raise ValueError("INVITE_DEFAULT_HOURS and INVITE_MAX_HOURS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
