from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

# Minimum accepted length for an operator-supplied signing secret
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token authority and the tab coordinator."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sessionguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_persist: bool = env_field(
        False,
        "MEMORY_STORE_PERSIST",
        description="Write the memory store to SHARED_FS_ROOT/state so dev data survives restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        3600,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of a minted access token",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Lifetime of each refresh token link (restarts on rotation)",
    )
    refresh_threshold_seconds: int = env_field(
        300,
        "REFRESH_THRESHOLD_SECONDS",
        description="How long before access-token expiry the leader tab refreshes",
    )
    liveness_check_interval_seconds: float = env_field(
        10.0,
        "LIVENESS_CHECK_INTERVAL_SECONDS",
        description="How often a follower tab pings the leader",
    )
    leader_ack_timeout_seconds: float = env_field(
        0.5,
        "LEADER_ACK_TIMEOUT_SECONDS",
        description="How long a follower waits for LEADER_ACK before promoting itself",
    )
    broadcast_channel: str = env_field("session_refresh_sync", "BROADCAST_CHANNEL")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    suspicious_refresh_threshold: int = env_field(
        10,
        "SUSPICIOUS_REFRESH_THRESHOLD",
        description="Refreshes per subject per minute before a warning event is emitted",
    )
    register_enabled: bool = env_field(True, "REGISTER_ENABLED")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "liveness_check_interval_seconds",
        "leader_ack_timeout_seconds",
        "suspicious_refresh_threshold",
    )
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("refresh_threshold_seconds")
    @classmethod
    def _threshold_not_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("refresh threshold cannot be negative")
        return value

    @model_validator(mode="after")
    def _check_token_windows(self) -> "Settings":
        if self.refresh_threshold_seconds >= self.access_token_ttl_seconds:
            raise ValueError(
                "refresh_threshold_seconds must be smaller than access_token_ttl_seconds"
            )
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError(
                "refresh_token_ttl_seconds must exceed access_token_ttl_seconds"
            )
        if self.leader_ack_timeout_seconds >= self.liveness_check_interval_seconds:
            raise ValueError(
                "leader_ack_timeout_seconds must be shorter than the liveness interval"
            )
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so access tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g. in a container)
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )
            else:
                if len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
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
