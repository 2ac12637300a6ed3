from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from familyhub.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; production turns on secure cookies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


SUPPORTED_LOCALES = ("en", "de")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/familyhub", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/familyhub", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Sessions
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_ttl_seconds: int = env_field(
        86400, "SESSION_TTL", description="Lifetime of a regular session cookie"
    )
    remember_me_ttl_seconds: int = env_field(
        2592000, "REMEMBER_ME_TTL", description="Lifetime of a remember-me session cookie"
    )
    token_encryption_key: str | None = env_field(
        None,
        "TOKEN_ENCRYPTION_KEY",
        description="Key material for secrets at rest; comma-separated for rotation (newest first)",
    )

    # OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_AUTH_REDIRECT_URI")
    microsoft_client_id: str | None = env_field(None, "MICROSOFT_CLIENT_ID")
    microsoft_client_secret: str | None = env_field(None, "MICROSOFT_CLIENT_SECRET")
    microsoft_redirect_uri: str | None = env_field(None, "MICROSOFT_AUTH_REDIRECT_URI")
    microsoft_tenant: str = env_field("common", "MICROSOFT_TENANT")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Family Hub", "EMAIL_FROM_NAME")

    # Rate limits (attempts, window seconds)
    login_rate_limit: int = env_field(5, "RATE_LIMIT_LOGIN_ATTEMPTS")
    login_rate_window_seconds: int = env_field(900, "RATE_LIMIT_LOGIN_WINDOW")
    lockout_threshold: int = env_field(10, "ACCOUNT_LOCKOUT_THRESHOLD")
    lockout_window_seconds: int = env_field(3600, "ACCOUNT_LOCKOUT_DURATION")
    register_rate_limit: int = env_field(3, "RATE_LIMIT_REGISTER_ATTEMPTS")
    register_rate_window_seconds: int = env_field(3600, "RATE_LIMIT_REGISTER_WINDOW")
    totp_rate_limit: int = env_field(5, "RATE_LIMIT_TOTP_ATTEMPTS")
    totp_rate_window_seconds: int = env_field(900, "RATE_LIMIT_TOTP_WINDOW")
    pin_rate_limit: int = env_field(5, "RATE_LIMIT_PIN_ATTEMPTS")
    pin_rate_window_seconds: int = env_field(900, "RATE_LIMIT_PIN_WINDOW")
    oauth_rate_limit: int = env_field(10, "RATE_LIMIT_OAUTH_ATTEMPTS")
    oauth_rate_window_seconds: int = env_field(900, "RATE_LIMIT_OAUTH_WINDOW")
    password_reset_rate_limit: int = env_field(3, "RATE_LIMIT_PASSWORD_RESET")
    password_reset_rate_window_seconds: int = env_field(
        3600, "RATE_LIMIT_PASSWORD_RESET_WINDOW"
    )
    verification_resend_rate_limit: int = env_field(3, "RATE_LIMIT_VERIFICATION_RESEND")
    verification_resend_rate_window_seconds: int = env_field(
        3600, "RATE_LIMIT_VERIFICATION_RESEND_WINDOW"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def encryption_keys(self) -> list[str]:
        """Key material for the secret-at-rest cipher, newest first."""
        if self.token_encryption_key:
            keys = [k.strip() for k in self.token_encryption_key.split(",") if k.strip()]
            if keys:
                return keys
        return [self.session_secret]

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("session_ttl_seconds", "remember_me_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session TTLs must be positive")
        return value

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("SESSION_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so cookies remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/familyhub"))
        secret_path = fs_root / ".session_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "session_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".session_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session secret; set SESSION_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
