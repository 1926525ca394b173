"""Usage ledger models."""

from datetime import datetime

from pydantic import BaseModel, Field


class UsageRecord(BaseModel):
    """Per-user, per-month usage counters."""

    user_id: str
    subscription_id: str | None = None
    period_key: str
    characters_used: int = Field(default=0, ge=0)
    requests_count: int = Field(default=0, ge=0)
    audio_files_generated: int = Field(default=0, ge=0)
    total_audio_duration_seconds: int = Field(default=0, ge=0)
    last_used_at: datetime | None = None
    created_at: datetime | None = None


class UsageSnapshot(BaseModel):
    """Usage figures returned alongside a conversion."""

    characters_used: int
    characters_limit: int
    remaining: int
    usage_percentage: float


class QuotaCheck(UsageSnapshot):
    """Result of a quota pre-check."""

    allowed: bool
    requested_characters: int
    period_key: str
    reset_at: datetime
    usage_record: UsageRecord


class UsageStats(BaseModel):
    """Monthly usage statistics for the usage endpoint."""

    period_key: str
    year: int
    month: int
    characters_used: int = 0
    characters_limit: int = 0
    remaining_characters: int = 0
    usage_percentage: float = 0.0
    requests_count: int = 0
    audio_files_generated: int = 0
    total_audio_duration_seconds: int = 0
    has_exceeded_limit: bool = False
    last_used_at: datetime | None = None
