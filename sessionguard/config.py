from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

# Minimum accepted length for a configured or persisted signing secret
MIN_SECRET_LENGTH = 32

_DEFAULT_STATE_DIR = os.path.join(tempfile.gettempdir(), "sessionguard")


class SigningAlgorithm(str, Enum):
    """Symmetric algorithms the token codec can be pinned to."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


class LogoutScope(str, Enum):
    """Which access tokens a logout invalidates.

    - TOKEN: only the access token presented with the logout call
    - FAMILY: every access token issued in the login chain of the session
    """

    TOKEN = "token"
    FAMILY = "family"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token and session lifecycle."""

    state_dir: str = env_field(_DEFAULT_STATE_DIR, "STATE_DIR")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_algorithm: SigningAlgorithm = env_field(
        SigningAlgorithm.HS256,
        "JWT_ALGORITHM",
        description="Single signing algorithm pinned for this deployment",
    )
    access_token_ttl_seconds: int = env_field(300, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    clock_skew_leeway_seconds: int = env_field(
        0,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Seconds a token is still accepted past its exp claim; 0 disables leeway",
    )
    session_tombstone_grace_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_TOMBSTONE_GRACE_SECONDS",
        description="How long sessions are kept past expiry so replays stay detectable",
    )
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS", ge=0)
    revoke_family_on_reuse: bool = env_field(
        False,
        "REVOKE_FAMILY_ON_REUSE",
        description="Revoke the whole login chain when a rotated refresh token is replayed",
    )
    logout_scope: LogoutScope = env_field(LogoutScope.TOKEN, "LOGOUT_SCOPE")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallback when Redis is unreachable",
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

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: SigningAlgorithm) -> SigningAlgorithm:
        return SigningAlgorithm(value)

    @field_validator("logout_scope")
    @classmethod
    def _validate_logout_scope(cls, value: LogoutScope) -> LogoutScope:
        return LogoutScope(value)

    @field_validator("clock_skew_leeway_seconds", "session_tombstone_grace_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so issued tokens stay valid across restarts
        state_dir = Path(info.data.get("state_dir") or _DEFAULT_STATE_DIR)
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
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
