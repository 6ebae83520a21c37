"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for credgate happen here. No module should
call os.getenv() or os.environ.get() directly. The process entry point calls
get_settings() once and hands the resulting Settings object to each
component's constructor; components never reach for ambient state.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Frozen BaseSettings: the model is immutable after construction, so a
      component holding a reference can never observe a changed signing key
      or TTL mid-flight.

  @model_validator(mode="before"): signing secrets are resolved before the
      model is frozen. Dev mode generates missing secrets with a warning;
      production mode refuses to start without them.

Security notes:
  Signing secrets shorter than 32 chars are rejected outright. HS256 relies
  on key entropy -- a short key weakens every token issued with it.

  The access and refresh secrets must differ so that a refresh envelope can
  never be replayed as an access token.

  Secrets are held in memory only. __repr__ of SecretStr hides them from
  logs and tracebacks.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or notify/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("credgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'credgate.db'}"

_SECRET_FIELDS = ("access_token_secret", "refresh_token_secret")
_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields except the two signing secrets have defaults. Tests construct
    Settings(debug=True, bcrypt_rounds=4) directly and never touch the
    environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Signing secrets (process-wide, read-only after startup)
    # ------------------------------------------------------------------

    access_token_secret: SecretStr = SecretStr("")
    refresh_token_secret: SecretStr = SecretStr("")

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    email_verify_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    password_reset_ttl_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    # bcrypt accepts 4..31. 12 keeps interactive login around a quarter second.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Session policy
    # ------------------------------------------------------------------

    # Presenting an already-rotated refresh token revokes every active
    # refresh token of that user.
    refresh_reuse_revokes_all: bool = True
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Outbound links
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="before")
    @classmethod
    def resolve_secrets(cls, data: Any) -> Any:
        """Fill in or reject signing secrets before the model is frozen.

        Dev mode (DEBUG=true): generate each missing secret with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject
            identical access/refresh secrets.
        """
        if not isinstance(data, dict):
            return data
        debug = str(data.get("debug", "")).strip().lower() in _TRUTHY
        resolved = dict(data)
        for name in _SECRET_FIELDS:
            value = resolved.get(name) or ""
            if isinstance(value, SecretStr):
                value = value.get_secret_value()
            if not value:
                if not debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
            resolved[name] = value
        if resolved["access_token_secret"] == resolved["refresh_token_secret"]:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        return resolved


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Called once by the process entry point. Library code receives the
    instance through constructors instead of calling this.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
