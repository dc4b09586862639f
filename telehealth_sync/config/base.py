"""Base configuration settings."""

import os
import secrets
import warnings

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENCRYPTION_KEY_LENGTH = 32
ENCRYPTION_IV_LENGTH = 16


class Settings(BaseSettings):
    """Application settings.

    Note: the encryption key and IV protect PHI at rest and must come from a
    secret store in production.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Telehealth Sync"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "console"

    # Database
    database_url: str = "sqlite+aiosqlite:///./telehealth.db"
    database_echo: bool = False
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # FHIR server
    fhir_server_url: str = "http://localhost:8080/fhir"
    fhir_timeout: int = 30

    # PHI encryption
    encryption_key: str = Field(
        default_factory=lambda: os.getenv("ENCRYPTION_KEY", ""),
        description="AES-256 key material, padded or truncated to 32 bytes",
    )
    encryption_iv: str = Field(
        default_factory=lambda: os.getenv("ENCRYPTION_IV", ""),
        description="AES block IV material, padded or truncated to 16 bytes",
    )

    # Maintenance
    cleanup_actor_id: str = "SystemCleanup"

    @field_validator("encryption_key", "encryption_iv")
    @classmethod
    def validate_encryption_material(cls, v: str, info: ValidationInfo) -> str:
        """Require key material outside development, generate it otherwise."""
        if v:
            return v

        env = os.getenv("ENVIRONMENT", "development").lower()
        if env in ["production", "staging"]:
            raise ValueError(
                f"{info.field_name} MUST be set in {env}. "
                "Existing ciphertext cannot be read without the original value."
            )

        length = (
            ENCRYPTION_KEY_LENGTH
            if info.field_name == "encryption_key"
            else ENCRYPTION_IV_LENGTH
        )
        generated = secrets.token_urlsafe(length)[:length]
        warnings.warn(
            f"SECURITY WARNING: {info.field_name} not set. "
            "Generated a temporary value; data encrypted with it is unreadable "
            "after restart. NEVER use this in production!",
            stacklevel=2,
        )
        return generated

    @property
    def is_sqlite(self) -> bool:
        """Whether the local store runs on SQLite."""
        return self.database_url.startswith("sqlite")
