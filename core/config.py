"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ComplianceAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.
      Complex fields (JWT_PREVIOUS_KEYS, ALLOWED_HOSTS) are parsed as JSON.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing key material
      with a warning; production mode refuses to start without it.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the backup-code HMAC both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       ENCRYPTION_KEYS is a hard startup failure. MFA secrets encrypted under a
       throwaway key would be unrecoverable after restart.

  [K1] Encryption keys are never embedded in code. They arrive through
       ENCRYPTION_KEYS (comma-separated Fernet keys, primary first) or
       ENCRYPTION_KEYS_FILE (a mounted secret file, one key per line).

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or audit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from cryptography.fernet import Fernet
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("complianceauth.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Tests build Settings(...) directly
    with low bcrypt cost and no latency padding.
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

    # Empty means "use the store's default SQLite file".
    auth_db_url: str = ""
    audit_db_url: str = ""
    db_timeout_seconds: float = 5.0

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    # kid of SECRET_KEY in the JWT key ring. Rotate by moving the old
    # SECRET_KEY into JWT_PREVIOUS_KEYS under its kid and picking a new kid.
    jwt_key_id: str = "primary"
    jwt_previous_keys: dict[str, str] = {}

    encryption_keys: str = ""
    encryption_keys_file: str = ""

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    access_token_expire_seconds: int = 900
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    refresh_cookie_path: str = "/api/v1/auth/refresh"

    # ------------------------------------------------------------------
    # Account protection
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    lockout_threshold: int = 5
    lockout_window_minutes: int = 15
    lockout_minutes: int = 30
    # 1.0 = every lockout lasts lockout_minutes. 2.0 doubles the duration on
    # each consecutive lockout, capped at lockout_max_minutes.
    lockout_backoff_multiplier: float = 1.0
    lockout_max_minutes: int = 24 * 60
    auth_failure_min_seconds: float = 0.35

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 12
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_numbers: bool = True
    password_require_symbols: bool = True
    # Number of previous hashes kept for reuse checks. 0 disables history.
    password_history_size: int = 24
    # 0 disables expiry.
    password_expiry_days: int = 90

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_issuer: str = "ComplianceAuth"
    mfa_valid_window: int = 1
    mfa_backup_code_count: int = 10
    mfa_challenge_seconds: int = 300

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_append_attempts: int = 5

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

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
        for kid, key in self.jwt_previous_keys.items():
            if len(key) < 32:
                raise ValueError(f"JWT_PREVIOUS_KEYS[{kid!r}] must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_encryption_keys(self) -> "Settings":
        """Resolve and validate the Fernet keys used for secrets at rest [K1].

        ENCRYPTION_KEYS_FILE wins over ENCRYPTION_KEYS when both are set.
        Every key must be a valid Fernet key; a malformed key is a startup
        failure rather than a decrypt failure at the first MFA login.
        """
        if self.encryption_keys_file:
            path = Path(self.encryption_keys_file)
            lines = path.read_text(encoding="utf-8").splitlines()
            self.encryption_keys = ",".join(line.strip() for line in lines if line.strip())
        if not self.encryption_keys:
            if self.debug:
                self.encryption_keys = Fernet.generate_key().decode()
                logger.warning(
                    "WARNING: Using auto-generated ENCRYPTION_KEYS. "
                    "Enrolled MFA secrets will be unreadable after restart."
                )
            else:
                raise ValueError(
                    "ENCRYPTION_KEYS (or ENCRYPTION_KEYS_FILE) is required in production mode. "
                    "Generate one with: python main.py generate-key"
                )
        for key in self.encryption_key_list:
            Fernet(key.encode())  # raises ValueError on a malformed key
        return self

    @property
    def encryption_key_list(self) -> list[str]:
        """Configured Fernet keys, primary first."""
        return [k.strip() for k in self.encryption_keys.split(",") if k.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests that need explicit overrides.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
