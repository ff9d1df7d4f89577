from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from taskvault.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


class CredentialSourceOrder(str, Enum):
    """Where the session authenticator looks for an access token first."""

    COOKIE_FIRST = "cookie_first"
    HEADER_FIRST = "header_first"


SUPPORTED_JWT_ALGORITHMS = ("HS256", "HS384", "HS512")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup and never mutated."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/taskvault", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for memory-store state and the generated JWT secret",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    access_cookie_ttl_days: int = env_field(30, "ACCESS_COOKIE_TTL_DAYS", gt=0)
    credential_source_order: CredentialSourceOrder = env_field(
        CredentialSourceOrder.COOKIE_FIRST, "CREDENTIAL_SOURCE_ORDER"
    )

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="Argon2 memory cost in KiB"
    )

    strict_task_visibility: bool = env_field(
        False,
        "STRICT_TASK_VISIBILITY",
        description="Answer 404 instead of 403 for tasks owned by someone else",
    )
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

    cors_allow_origins: str | None = env_field(None, "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(
                f"JWT_ALGORITHM must be one of {', '.join(SUPPORTED_JWT_ALGORITHMS)}"
            )
        return normalized

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        if info.data.get("environment") == Environment.PRODUCTION:
            raise ValueError("JWT_SECRET must be set in production")
        return _load_or_generate_secret(info.data.get("shared_fs_root"))

    def allowed_origins(self) -> list[str]:
        if self.cors_allow_origins:
            return [
                origin.strip()
                for origin in self.cors_allow_origins.split(",")
                if origin.strip()
            ]
        if self.is_production:
            return []
        return ["http://localhost:3000", "http://127.0.0.1:3000"]


def _load_or_generate_secret(fs_root_value: str | None) -> str:
    """Return a persisted development secret, creating one if needed.

    Tokens stay valid across restarts as long as the same SHARED_FS_ROOT is
    used. Without a root directory the secret lives for the process only.
    """
    generated = secrets.token_urlsafe(64)
    if not fs_root_value:
        logger.warning("jwt_secret_ephemeral", reason="JWT_SECRET and SHARED_FS_ROOT unset")
        return generated

    fs_root = Path(fs_root_value)
    secret_path = fs_root / ".jwt_secret"
    fs_root.mkdir(parents=True, exist_ok=True)

    if secret_path.exists() and not secret_path.is_symlink():
        persisted = secret_path.read_text().strip()
        if len(persisted) >= 32:
            return persisted
        logger.warning("jwt_secret_too_short", path=str(secret_path))

    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
    try:
        os.write(fd, generated.encode())
        os.fchmod(fd, 0o600)
    finally:
        os.close(fd)
    try:
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
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
