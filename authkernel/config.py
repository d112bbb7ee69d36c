from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Persistence backends that implement the storage adapter contract."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    KV = "kv"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity kernel."""

    storage_backend: StorageBackend = env_field(StorageBackend.MEMORY, "STORAGE_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authkernel", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; never enable in production.",
    )
    issuer: str = env_field("http://localhost:8000/", "ISSUER")
    default_tenant_id: str = env_field("default", "DEFAULT_TENANT_ID")
    jwt_secret: str = env_field(
        None,
        "JWT_SECRET",
        description="Tenant default signing secret used when no tenant or API secret is set",
    )
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Login sessions and one-time codes
    login_session_ttl_seconds: int = env_field(3600, "LOGIN_SESSION_TTL_SECONDS")
    authorization_code_ttl_seconds: int = env_field(60, "AUTHORIZATION_CODE_TTL_SECONDS")
    email_verification_ttl_seconds: int = env_field(
        24 * 3600, "EMAIL_VERIFICATION_TTL_SECONDS"
    )
    password_reset_ttl_seconds: int = env_field(24 * 3600, "PASSWORD_RESET_TTL_SECONDS")
    invite_ttl_seconds: int = env_field(7 * 24 * 3600, "INVITE_TTL_SECONDS")
    invite_max_ttl_seconds: int = env_field(30 * 24 * 3600, "INVITE_MAX_TTL_SECONDS")
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")
    code_retention_seconds: int = env_field(
        24 * 3600,
        "CODE_RETENTION_SECONDS",
        description="How long expired codes are kept before the key-value TTL reaps them",
    )

    # Token issuance
    default_token_lifetime: int = env_field(86400, "DEFAULT_TOKEN_LIFETIME")
    default_token_lifetime_for_web: int = env_field(7200, "DEFAULT_TOKEN_LIFETIME_FOR_WEB")
    id_token_lifetime: int = env_field(36000, "ID_TOKEN_LIFETIME")
    refresh_token_ttl_seconds: int = env_field(30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")

    # Action pipeline
    pipeline_step_timeout_ms: int = env_field(5000, "PIPELINE_STEP_TIMEOUT_MS")
    pipeline_budget_ms: int = env_field(20000, "PIPELINE_BUDGET_MS")
    action_request_allowlist: List[str] = env_field(
        [],
        "ACTION_REQUEST_ALLOWLIST",
        description="Hosts SEND_REQUEST may reach; empty blocks all outbound calls",
    )
    action_request_proxy_url: str | None = env_field(None, "ACTION_REQUEST_PROXY_URL")

    # Delivery collaborators fall back to these when the tenant sets no sender
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authkernel", "EMAIL_FROM_NAME")

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

    @field_validator("storage_backend")
    @classmethod
    def _validate_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator("action_request_allowlist", mode="before")
    @classmethod
    def _split_allowlist(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("issuer")
    @classmethod
    def _normalize_issuer(cls, value: str) -> str:
        return value if value.endswith("/") else value + "/"

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authkernel"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
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
