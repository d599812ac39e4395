from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from persistoken.service.crypto_providers import PROVIDERS
from persistoken.storage.models import TOKEN_FIELDS


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token generation, rotation and the bulk sweep."""

    crypto_provider: str = env_field(
        "sha512",
        "PERSISTOKEN_CRYPTO_PROVIDER",
        description="One-way hardening algorithm applied to generated tokens",
    )
    random_draw_count: int = env_field(
        10,
        "PERSISTOKEN_RANDOM_DRAW_COUNT",
        description="Independent random draws mixed into every token",
    )
    page_size: int = env_field(
        50,
        "PERSISTOKEN_PAGE_SIZE",
        description="Records fetched per page during forget-all sweeps",
    )
    max_collision_retries: int = env_field(
        3,
        "PERSISTOKEN_MAX_COLLISION_RETRIES",
        description="Extra generation attempts when the store reports a duplicate token",
    )
    token_field: str = env_field("persistence_token", "PERSISTOKEN_TOKEN_FIELD")
    credential_field: str = env_field("password_hash", "PERSISTOKEN_CREDENTIAL_FIELD")
    aes_key: str | None = env_field(
        None,
        "PERSISTOKEN_AES_KEY",
        description="Key material for the reversible aes256 provider (never used for tokens)",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/persistoken", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/persistoken", "SHARED_FS_ROOT")

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

    @field_validator("crypto_provider")
    @classmethod
    def _validate_crypto_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in PROVIDERS:
            raise ValueError(
                f"unknown crypto provider {value!r}; expected one of {sorted(PROVIDERS)}"
            )
        return normalized

    @field_validator("random_draw_count", "page_size")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("max_collision_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("token_field", "credential_field")
    @classmethod
    def _validate_field_name(cls, value: str) -> str:
        if not value.isidentifier():
            raise ValueError(f"{value!r} is not a valid field name")
        return value

    @field_validator("token_field")
    @classmethod
    def _validate_token_field(cls, value: str) -> str:
        if value not in TOKEN_FIELDS:
            raise ValueError(
                f"{value!r} cannot hold a persistence token; expected one of {sorted(TOKEN_FIELDS)}"
            )
        return value


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
