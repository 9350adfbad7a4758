from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from asphaltworks.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the API, the stores and the admission controller."""

    database_url: str = env_field(
        "postgresql://localhost:5432/asphaltworks", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_persist: bool = env_field(
        True,
        "MEMORY_STORE_PERSIST",
        description="Write the in-memory store to SHARED_FS_ROOT/state after each mutation",
    )
    shared_fs_root: str = env_field("/srv/asphaltworks", "SHARED_FS_ROOT")
    media_root: str | None = env_field(
        None, "MEDIA_ROOT", description="Upload directory; defaults to SHARED_FS_ROOT/media"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    rate_limit_backend: str = env_field(
        "memory", "RATE_LIMIT_BACKEND", description="memory (single instance) or redis"
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("asphaltworks", "JWT_ISSUER")
    jwt_audience: str = env_field("asphaltworks-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    token_bytes: int = env_field(32, "TOKEN_BYTES", ge=32)
    refresh_token_bytes: int = env_field(64, "REFRESH_TOKEN_BYTES", ge=32)

    # Lockout and hashing
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES", ge=1)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Asphalt Works", "EMAIL_FROM_NAME")
    admin_notification_email: str | None = env_field(None, "ADMIN_NOTIFICATION_EMAIL")
    client_url: str = env_field("http://localhost:5173", "CLIENT_URL")

    # HTTP
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")
    trusted_ips: List[str] = env_field([], "TRUSTED_IPS")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Take the client IP from X-Forwarded-For (behind a reverse proxy only)",
    )
    max_upload_bytes: int = env_field(10 * 1024 * 1024, "MAX_UPLOAD_BYTES")

    # Admission control; every window is 15 minutes unless overridden
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_general_max: int = env_field(100, "RATE_LIMIT_GENERAL_MAX")
    rate_limit_auth_max: int = env_field(5, "RATE_LIMIT_AUTH_MAX")
    rate_limit_read_max: int = env_field(200, "RATE_LIMIT_READ_MAX")
    rate_limit_strict_max: int = env_field(10, "RATE_LIMIT_STRICT_MAX")
    rate_limit_upload_max: int = env_field(50, "RATE_LIMIT_UPLOAD_MAX")
    rate_limit_heavy_max: int = env_field(20, "RATE_LIMIT_HEAVY_MAX")
    rate_limit_password_max: int = env_field(3, "RATE_LIMIT_PASSWORD_MAX")
    rate_limit_password_window_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_PASSWORD_WINDOW_SECONDS"
    )
    speed_limit_delay_after: int = env_field(50, "SPEED_LIMIT_DELAY_AFTER")
    speed_limit_delay_ms: int = env_field(500, "SPEED_LIMIT_DELAY_MS")
    speed_limit_max_delay_ms: int = env_field(20_000, "SPEED_LIMIT_MAX_DELAY_MS")

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

    @field_validator("cors_allow_origins", "trusted_ips", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> List[str]:
        return _split_csv(value)

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        normalized = (value or "memory").strip().lower()
        if normalized not in {"memory", "redis"}:
            raise ValueError("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")
        return normalized

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/asphaltworks"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RuntimeError(
                "Unable to create SHARED_FS_ROOT; set JWT_SECRET explicitly"
            ) from exc

        if secret_path.exists() and not secret_path.is_symlink():
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
            logger.warning("jwt_secret_persisted_too_short", path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, secret_path)
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @property
    def media_path(self) -> Path:
        if self.media_root:
            return Path(self.media_root)
        return Path(self.shared_fs_root) / "media"


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
