"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_manager import CREDENTIAL_KEYS, get_credential


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load credential fields from the OS keychain via ``keyring``.

    Only fields whose uppercase name appears in
    :data:`~services.credential_manager.CREDENTIAL_KEYS` are looked up.
    All other fields return ``None`` so the next source in the chain
    handles them.
    """

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        env_name = field_name.upper()
        if env_name not in CREDENTIAL_KEYS:
            return None, field_name, False
        value = get_credential(env_name)
        return value, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, is_complex = self.get_field_value(field_info, field_name)
            if value is not None:
                d[key] = value
        return d


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            KeychainSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # Database
    DATABASE_URL: str = "sqlite:///./money_sync.db"

    # Aggregator API
    AGGREGATOR_API_URL: str = "https://api.teller.io"
    AGGREGATOR_API_KEY: str = ""
    AGGREGATOR_TIMEOUT_SECONDS: float = 10.0
    AGGREGATOR_CERT_PATH: str = ""
    AGGREGATOR_KEY_PATH: str = ""

    # Inbound webhooks
    WEBHOOK_SECRET: str = ""
    WEBHOOK_SIGNATURE_HEADER: str = "teller-signature"
    WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS: int = 300
    WEBHOOK_NONCE_RETENTION_SECONDS: int = 86_400
    WEBHOOK_RATE_LIMIT: int = 60
    WEBHOOK_RATE_PERIOD_SECONDS: int = 60

    # Sync scheduling and job queue
    SYNC_INTERVAL_SECONDS: int = 1800
    SYNC_DISPATCH_INTERVAL_SECONDS: int = 1800
    SYNC_JOB_MAX_ATTEMPTS: int = 5
    SYNC_BACKOFF_BASE_SECONDS: int = 15
    SYNC_BACKOFF_MAX_SECONDS: int = 300
    SYNC_UNIQUE_PERIOD_SECONDS: int = 60
    SYNC_WORKER_ENABLED: bool = False
    SYNC_WORKER_CONCURRENCY: int = 4
    SYNC_WORKER_POLL_SECONDS: float = 5.0
    SYNC_JOB_PRUNE_AGE_SECONDS: int = 86_400
    SYNC_JOB_RESCUE_AFTER_SECONDS: int = 3600

    @field_validator("WEBHOOK_SECRET", "AGGREGATOR_API_KEY", mode="before")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        """Trim whitespace picked up from shell exports or pasted values."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("SYNC_WORKER_CONCURRENCY", "SYNC_JOB_MAX_ATTEMPTS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
