"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (SynthesisConfig, StorageConfig, QuotaConfig,
RetentionConfig, TableConfig) are env-overridable via the double-underscore
delimiter, e.g.:
    SYNTHESIS__REQUEST_TIMEOUT_SECONDS=90
    STORAGE__BUCKET=tts-audio-staging
    QUOTA__TIMEZONE=Europe/Lisbon
    RETENTION__COMPLETED_DAYS=30
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SynthesisConfig(BaseModel):
    """Speech provider call parameters."""

    standard_model: str = "tts-1"
    neural_model: str = "tts-1-hd"
    request_timeout_seconds: float = 120.0
    # Provider surcharge applied to billed characters for the neural engine
    neural_cost_multiplier: float = 1.5
    # Heuristic used for duration estimates, not measured from the audio
    words_per_minute: int = 150
    preview_max_characters: int = 100


class StorageConfig(BaseModel):
    """Object storage bucket and signing parameters."""

    bucket: str = "tts-audio"
    audio_prefix: str = "audio"
    signed_url_ttl_seconds: int = 3600
    upload_timeout_seconds: float = 30.0
    sign_timeout_seconds: float = 10.0


class QuotaConfig(BaseModel):
    """Quota period and admission limits."""

    # Reference timezone for the monthly quota period ("YYYY-MM")
    timezone: str = "UTC"
    max_text_length: int = 300_000
    default_concurrency_limit: int = 5


class RetentionConfig(BaseModel):
    """Retention windows used by the cleanup collaborator."""

    completed_days: int = 90
    failed_days: int = 7
    orphan_grace_hours: int = 24
    # Longer than any synthesis, upload and signing timeouts combined
    stale_processing_minutes: int = 30


class TableConfig(BaseModel):
    """Supabase table and function names."""

    subscriptions: str = "subscriptions"
    plans: str = "plans"
    usage_records: str = "usage_records"
    synthesis_jobs: str = "synthesis_jobs"
    increment_usage_function: str = "increment_usage"
    record_download_function: str = "record_job_download"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # API Keys
    openai_api_key: str

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Shared secret for the retention/teardown endpoints; empty disables them
    maintenance_token: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    tables: TableConfig = Field(default_factory=TableConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
