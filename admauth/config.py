from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from admauth.logging import get_logger

logger = get_logger(__name__)


class SessionCapPolicy(str, Enum):
    """What happens when a user already holds the maximum number of sessions."""

    EVICT_OLDEST = "evict_oldest"
    REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional ``.env`` file."""

    database_url: str = env_field("postgresql://localhost:5432/admauth", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/admauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets and Redis fallback.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("admauth", "JWT_ISSUER")
    jwt_audience: str = env_field("adm-console", "JWT_AUDIENCE")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )

    # Lockout policy
    lockout_threshold: int = env_field(
        5, "LOCKOUT_THRESHOLD", description="Failed logins that trigger a lock"
    )
    lockout_window_seconds: int = env_field(
        30, "LOCKOUT_WINDOW_SECONDS", description="Duration of a lock in seconds"
    )

    # Session registry defaults (overridable at runtime via /v1/session-config)
    session_timeout_days: int = env_field(30, "SESSION_TIMEOUT_DAYS")
    max_active_sessions: int = env_field(5, "MAX_ACTIVE_SESSIONS")
    session_cap_policy: SessionCapPolicy = env_field(
        SessionCapPolicy.EVICT_OLDEST,
        "SESSION_CAP_POLICY",
        description="evict_oldest or reject when maxActiveSessions is reached",
    )
    session_sweep_interval_seconds: int = env_field(
        300,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Upper bound on the expired-session sweep interval",
    )

    # Two-factor
    totp_issuer: str = env_field("ADM System", "TOTP_ISSUER")
    totp_window: int = env_field(
        2, "TOTP_WINDOW", description="Accepted TOTP steps either side of now"
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    two_factor_challenge_ttl_seconds: int = env_field(
        300, "TWO_FACTOR_CHALLENGE_TTL_SECONDS"
    )

    simulation_header: str = env_field("x-simulated-rank", "SIMULATION_HEADER")
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed origins",
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

    @field_validator("session_cap_policy")
    @classmethod
    def _validate_cap_policy(cls, value: SessionCapPolicy) -> SessionCapPolicy:
        return SessionCapPolicy(value)

    @field_validator("lockout_threshold", "lockout_window_seconds", "backup_code_count")
    @classmethod
    def _positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("must be a positive integer")
        return int(value)

    @field_validator("totp_window")
    @classmethod
    def _validate_totp_window(cls, value: int) -> int:
        if not 0 <= int(value) <= 10:
            raise ValueError("TOTP_WINDOW must be between 0 and 10")
        return int(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/admauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
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
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
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

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
