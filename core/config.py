"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the account-security service happen here.
No module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. lockout_threshold -> LOCKOUT_THRESHOLD). Type coercion and
      validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a master key with a
      warning; production mode refuses to start without one.

Security notes:
  SECRET_KEY is the master key. It never signs session tokens directly --
  signing keys live in the rotating key ring (auth/keys.py). The master key
  encrypts those signing secrets at rest and peppers backup-code hashes, so
  it is held to the same length rule as a signing secret.

  Lockout threshold and duration are deployment policy, not business logic.
  Tune them with LOCKOUT_THRESHOLD / LOCKOUT_DURATION_MINUTES.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or audit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("qualibrite.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'qualibrite_security.db'}"


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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # bcrypt cost factor. Tests lower it; production keeps the library default.
    bcrypt_rounds: int = 12
    token_expire_seconds: int = 24 * 3600
    remember_me_expire_seconds: int = 30 * 24 * 3600
    pending_mfa_expire_seconds: int = 300
    token_issuer: str = "qualibrite-health-api"
    token_audience: str = "qualibrite-health-app"

    # ------------------------------------------------------------------
    # Lockout policy
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_duration_minutes: int = 30

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_issuer: str = "Qualibrite Health"
    mfa_backup_code_count: int = 10
    # Adjacent 30-second steps accepted on each side of the current one.
    mfa_valid_window: int = 1
    # "Remind me later" exemption from a mandatory MFA requirement.
    mfa_exemption_days: int = 7
    mfa_exemption_roles: list[str] = ["patient", "provider", "billing", "intake_coordinator", "marketing"]

    # ------------------------------------------------------------------
    # Signing-key rotation
    # ------------------------------------------------------------------

    key_grace_default_days: int = 30
    key_sweep_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True
    csrf_enabled: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the master key policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Encrypted signing keys from a previous run become unreadable and
            the key ring is re-seeded -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Signing keys will not persist across restarts."
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
    def validate_policy(self) -> "Settings":
        """Reject policy values that would disable lockout or break rotation."""
        if self.lockout_threshold < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1.")
        if self.lockout_duration_minutes < 1:
            raise ValueError("LOCKOUT_DURATION_MINUTES must be at least 1.")
        if not 1 <= self.key_grace_default_days <= 90:
            raise ValueError("KEY_GRACE_DEFAULT_DAYS must be between 1 and 90.")
        if self.mfa_valid_window < 0:
            raise ValueError("MFA_VALID_WINDOW cannot be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
