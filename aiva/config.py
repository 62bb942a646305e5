from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any
from urllib.parse import quote

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from aiva.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are AIVA, a helpful AI assistant. Answer clearly and concisely. "
    "When the user attaches documents, ground your answer in their content "
    "and say so when the documents do not contain the answer."
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the AIVA chat backend."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    sql_server: str | None = env_field(None, "SQL_SERVER")
    sql_database: str | None = env_field(None, "SQL_DATABASE")
    sql_username: str | None = env_field(None, "SQL_USERNAME")
    sql_password: str | None = env_field(None, "SQL_PASSWORD")
    sql_port: int = env_field(5432, "SQL_PORT")
    sql_encrypt: bool = env_field(True, "SQL_ENCRYPT")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/aiva", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI: echo LLM backend and in-process cache.",
    )
    app_env: str = env_field("production", "APP_ENV")

    # Development-only auth bypass
    bypass_auth: bool = env_field(False, "BYPASS_AUTH")
    dev_bypass_user_id: str = env_field(
        "00000000-0000-4000-8000-000000000001", "DEV_BYPASS_USER_ID"
    )
    dev_bypass_role: str = env_field("admin", "DEV_BYPASS_ROLE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("aiva", "JWT_ISSUER")
    jwt_audience: str = env_field("aiva-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60 * 24, "ACCESS_TOKEN_TTL_MINUTES")

    # Azure Blob Storage
    azure_storage_connection_string: str | None = env_field(
        None, "AZURE_STORAGE_CONNECTION_STRING"
    )
    azure_storage_account_name: str | None = env_field(None, "AZURE_STORAGE_ACCOUNT_NAME")
    azure_storage_account_key: str | None = env_field(None, "AZURE_STORAGE_ACCOUNT_KEY")
    azure_storage_container_name: str = env_field("aiva-files", "AZURE_STORAGE_CONTAINER_NAME")

    # Azure App Configuration
    azure_app_config_connection_string: str | None = env_field(
        None, "AZURE_APP_CONFIG_CONNECTION_STRING"
    )
    azure_app_config_endpoint: str | None = env_field(None, "AZURE_APP_CONFIG_ENDPOINT")
    mock_app_config: bool = env_field(False, "MOCK_APP_CONFIG")

    # Azure OpenAI
    azure_openai_endpoint: str | None = env_field(None, "AZURE_OPENAI_ENDPOINT")
    azure_openai_api_key: str | None = env_field(None, "AZURE_OPENAI_API_KEY")
    azure_openai_api_version: str = env_field("2024-05-01-preview", "AZURE_OPENAI_API_VERSION")
    azure_openai_deployment: str = env_field("gpt-4o", "AZURE_OPENAI_DEPLOYMENT_NAME")
    azure_openai_timeout_seconds: float = env_field(60.0, "AZURE_OPENAI_TIMEOUT_SECONDS")
    system_prompt: str = env_field(DEFAULT_SYSTEM_PROMPT, "AIVA_SYSTEM_PROMPT")

    # Rate limits and request caps
    chat_rate_limit_per_minute: int = env_field(30, "CHAT_RATE_LIMIT_PER_MINUTE")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    files_upload_rate_limit_per_minute: int = env_field(
        10, "FILES_UPLOAD_RATE_LIMIT_PER_MINUTE"
    )
    max_upload_bytes: int = env_field(10 * 1024 * 1024, "MAX_UPLOAD_BYTES")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("app_env")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return (value or "production").strip().lower()

    @field_validator("azure_openai_endpoint")
    @classmethod
    def _strip_endpoint(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.rstrip("/")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/aiva")
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
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
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        try:
            import tempfile

            fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def dev_bypass_enabled(self) -> bool:
        return self.bypass_auth and self.is_development

    @property
    def openai_configured(self) -> bool:
        return bool(self.azure_openai_endpoint and self.azure_openai_api_key)

    def resolve_database_url(self) -> str:
        """Return the PostgreSQL DSN, assembling it from SQL_* variables if needed."""

        if self.database_url:
            return self.database_url
        parts = [self.sql_server, self.sql_database, self.sql_username, self.sql_password]
        if not all(parts):
            raise RuntimeError("Missing required SQL database configuration in environment variables")
        sslmode = "require" if self.sql_encrypt else "prefer"
        return (
            f"postgresql://{quote(self.sql_username, safe='')}:{quote(self.sql_password, safe='')}"
            f"@{self.sql_server}:{self.sql_port}/{self.sql_database}?sslmode={sslmode}"
        )


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
