from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fleetauth.logging import get_logger

logger = get_logger(__name__)

SECURITY_CONFIG_VERSION = 1


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-level settings read from the environment (and ``.env``)."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fleetauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/fleetauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_audit_retention: int = env_field(5000, "MEMORY_STORE_AUDIT_RETENTION")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; allows running without Redis.",
    )
    app_name: str = env_field("Fuel Order System", "APP_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("fleetauth", "JWT_ISSUER")
    jwt_audience: str = env_field("fleetauth-clients", "JWT_AUDIENCE")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    # Argon2id cost parameters for passwords, PINs and backup codes
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    session_events_channel: str = env_field("session_events", "SESSION_EVENTS_CHANNEL")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Fuel Order System", "EMAIL_FROM_NAME")
    # SMS (Twilio REST API)
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_PHONE_NUMBER")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_refresh_secret")


def _load_or_create_secret(filename: str) -> str:
    """Read a persisted signing secret, generating one on first use.

    Persisting keeps issued tokens valid across restarts.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/fleetauth"))
    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: Optional[str] = None
    try:
        # Write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET/JWT_REFRESH_SECRET or make SHARED_FS_ROOT writable"
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


class PasswordPolicy(BaseModel):
    """Administrator-configured rules for standard-account passwords.

    Driver PINs follow a fixed four-digit format instead.
    """

    min_length: int = Field(8, ge=1)
    require_uppercase: bool = False
    require_lowercase: bool = False
    require_numbers: bool = False
    require_special_chars: bool = False
    history_count: int = Field(0, ge=0)

    model_config = ConfigDict(extra="ignore")


class SecurityConfig(BaseModel):
    """Admin-tunable session and lockout settings.

    Loaded fresh for every operation so changes apply to new sessions
    without a restart.
    """

    version: int = SECURITY_CONFIG_VERSION
    jwt_expiry_hours: int = Field(24, ge=1)
    refresh_token_expiry_days: int = Field(7, ge=1)
    max_login_attempts: int = Field(5, ge=1)
    lockout_duration_minutes: int = Field(15, ge=1)
    session_timeout_minutes: int = Field(30, ge=1)
    allow_multiple_sessions: bool = True
    must_change_grace_minutes: int = Field(5, ge=0)
    mfa_max_attempts: int = Field(5, ge=1)
    mfa_lockout_minutes: int = Field(15, ge=1)
    pending_mfa_ttl_minutes: int = Field(5, ge=1)
    trusted_device_days: int = Field(30, ge=1)
    max_trusted_devices: int = Field(5, ge=1)
    backup_code_count: int = Field(10, ge=1)
    otp_ttl_minutes: int = Field(5, ge=1)
    reset_token_ttl_minutes: int = Field(30, ge=1)
    password_policy: PasswordPolicy = Field(default_factory=PasswordPolicy)

    model_config = ConfigDict(extra="ignore")


class ConfigSource(Protocol):
    def load(self) -> SecurityConfig: ...


class StaticConfigSource:
    """Config source returning a fixed ``SecurityConfig`` (tests, CLI tools)."""

    def __init__(self, config: Optional[SecurityConfig] = None) -> None:
        self.config = config or SecurityConfig()

    def load(self) -> SecurityConfig:
        return self.config.model_copy(deep=True)


class StoreConfigSource:
    """Reads admin-managed security settings from the credential store.

    Stored values are merged over defaults; an unreadable document falls back
    to defaults rather than blocking authentication.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def load(self) -> SecurityConfig:
        raw = self.store.get_security_settings() or {}
        try:
            return SecurityConfig.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "security_config_invalid_using_defaults",
                errors=exc.error_count(),
                version=raw.get("version") if isinstance(raw, dict) else None,
            )
            return SecurityConfig()
