"""Quota ledger: monthly character usage per user, checked before admission
and committed with an atomic increment after a successful synthesis."""

import threading
from datetime import UTC, datetime
from typing import Protocol
from zoneinfo import ZoneInfo

import structlog

from ttsgate.config import TableConfig
from ttsgate.constants import PERIOD_KEY_FORMAT
from ttsgate.models.subscription import Plan
from ttsgate.models.usage import QuotaCheck, UsageRecord, UsageSnapshot, UsageStats
from ttsgate.services import supabase_client as db

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def usage_percentage(used: int, limit: int) -> float:
    if limit <= 0:
        return 100.0 if used > 0 else 0.0
    return round(used / limit * 100, 2)


class UsageRepository(Protocol):
    """Storage contract for usage records."""

    async def get(self, user_id: str, period_key: str) -> UsageRecord | None:
        """Fetch a period's usage record."""

    async def get_or_create(
        self, user_id: str, subscription_id: str | None, period_key: str
    ) -> UsageRecord:
        """Fetch the period's usage record, creating an empty one if missing."""

    async def increment(
        self,
        *,
        user_id: str,
        subscription_id: str | None,
        period_key: str,
        characters: int,
        duration_seconds: int,
        used_at: datetime,
    ) -> UsageRecord:
        """Atomically add to the counters and return the updated record."""

    async def delete_for_user(self, user_id: str) -> int:
        """Delete all of a user's usage records. Returns the number removed."""


class InMemoryUsageRepository:
    """In-memory repository used for tests and local fallback.

    Every mutation happens inside one synchronous critical section, so
    concurrent increments from tasks or threads never interleave.
    """

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], UsageRecord] = {}
        self._mutex = threading.Lock()

    async def get(self, user_id: str, period_key: str) -> UsageRecord | None:
        with self._mutex:
            record = self.records.get((user_id, period_key))
            return record.model_copy(deep=True) if record else None

    async def get_or_create(
        self, user_id: str, subscription_id: str | None, period_key: str
    ) -> UsageRecord:
        with self._mutex:
            record = self.records.setdefault(
                (user_id, period_key),
                UsageRecord(
                    user_id=user_id,
                    subscription_id=subscription_id,
                    period_key=period_key,
                    created_at=_utcnow(),
                ),
            )
            return record.model_copy(deep=True)

    async def increment(
        self,
        *,
        user_id: str,
        subscription_id: str | None,
        period_key: str,
        characters: int,
        duration_seconds: int,
        used_at: datetime,
    ) -> UsageRecord:
        with self._mutex:
            record = self.records.setdefault(
                (user_id, period_key),
                UsageRecord(
                    user_id=user_id,
                    subscription_id=subscription_id,
                    period_key=period_key,
                    created_at=used_at,
                ),
            )
            record.characters_used += characters
            record.requests_count += 1
            record.audio_files_generated += 1
            record.total_audio_duration_seconds += duration_seconds
            record.last_used_at = used_at
            if subscription_id and not record.subscription_id:
                record.subscription_id = subscription_id
            return record.model_copy(deep=True)

    async def delete_for_user(self, user_id: str) -> int:
        with self._mutex:
            keys = [key for key in self.records if key[0] == user_id]
            for key in keys:
                del self.records[key]
            return len(keys)


class SupabaseUsageRepository:
    """Supabase-backed usage records; increments go through a Postgres function."""

    def __init__(self, client, tables: TableConfig):
        self.client = client
        self.tables = tables

    async def get(self, user_id: str, period_key: str) -> UsageRecord | None:
        row = await db.get_usage_record(self.client, self.tables, user_id, period_key)
        return UsageRecord.model_validate(row) if row else None

    async def get_or_create(
        self, user_id: str, subscription_id: str | None, period_key: str
    ) -> UsageRecord:
        row = await db.ensure_usage_record(
            self.client, self.tables, user_id, subscription_id, period_key
        )
        return UsageRecord.model_validate(row)

    async def increment(
        self,
        *,
        user_id: str,
        subscription_id: str | None,
        period_key: str,
        characters: int,
        duration_seconds: int,
        used_at: datetime,
    ) -> UsageRecord:
        row = await db.increment_usage(
            self.client,
            self.tables,
            user_id=user_id,
            subscription_id=subscription_id,
            period_key=period_key,
            characters=characters,
            duration_seconds=duration_seconds,
            used_at=used_at,
        )
        return UsageRecord.model_validate(row)

    async def delete_for_user(self, user_id: str) -> int:
        return await db.delete_usage_records(self.client, self.tables, user_id)


class QuotaLedger:
    """Checks and records monthly character consumption."""

    def __init__(
        self,
        repository: UsageRepository,
        timezone: str = "UTC",
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.zone = ZoneInfo(timezone)
        self.now_provider = now_provider

    def _local_now(self) -> datetime:
        return self.now_provider().astimezone(self.zone)

    def current_period_key(self) -> str:
        return self._local_now().strftime(PERIOD_KEY_FORMAT)

    def period_key_for(self, year: int, month: int) -> str:
        return datetime(year, month, 1, tzinfo=self.zone).strftime(PERIOD_KEY_FORMAT)

    def next_reset_at(self) -> datetime:
        """First instant of the next quota period in the reference timezone."""
        now = self._local_now()
        if now.month == 12:
            return datetime(now.year + 1, 1, 1, tzinfo=self.zone)
        return datetime(now.year, now.month + 1, 1, tzinfo=self.zone)

    @staticmethod
    def snapshot(record: UsageRecord, plan: Plan) -> UsageSnapshot:
        limit = plan.features.characters_per_month
        return UsageSnapshot(
            characters_used=record.characters_used,
            characters_limit=limit,
            remaining=max(0, limit - record.characters_used),
            usage_percentage=usage_percentage(record.characters_used, limit),
        )

    async def check_quota(
        self,
        user_id: str,
        subscription_id: str | None,
        plan: Plan,
        requested_characters: int,
    ) -> QuotaCheck:
        """
        Best-effort pre-check of the requested length against the plan limit.

        The check is read-only apart from lazily creating the period's record
        and is not linearizable with concurrent commits.
        """
        period_key = self.current_period_key()
        record = await self.repository.get_or_create(user_id, subscription_id, period_key)
        snapshot = self.snapshot(record, plan)
        allowed = record.characters_used + requested_characters <= snapshot.characters_limit

        if not allowed:
            logger.info(
                "quota_precheck_denied",
                user_id=user_id,
                period_key=period_key,
                characters_used=record.characters_used,
                requested=requested_characters,
                limit=snapshot.characters_limit,
            )

        return QuotaCheck(
            **snapshot.model_dump(),
            allowed=allowed,
            requested_characters=requested_characters,
            period_key=period_key,
            reset_at=self.next_reset_at(),
            usage_record=record,
        )

    async def commit(
        self,
        usage_record: UsageRecord,
        actual_characters: int,
        duration_seconds: int,
    ) -> UsageRecord:
        """
        Record one successful synthesis.

        ``actual_characters`` is the provider's billed count, which may be
        larger than the length admitted by the pre-check; that overshoot is
        accepted rather than discarding audio that was already paid for.
        """
        if actual_characters < 0 or duration_seconds < 0:
            raise ValueError("Usage increments must be non-negative")

        updated = await self.repository.increment(
            user_id=usage_record.user_id,
            subscription_id=usage_record.subscription_id,
            period_key=usage_record.period_key,
            characters=actual_characters,
            duration_seconds=duration_seconds,
            used_at=self.now_provider(),
        )
        logger.info(
            "usage_committed",
            user_id=updated.user_id,
            period_key=updated.period_key,
            characters=actual_characters,
            characters_used=updated.characters_used,
        )
        return updated

    async def get_usage_stats(
        self,
        user_id: str,
        plan: Plan | None,
        year: int | None = None,
        month: int | None = None,
    ) -> UsageStats:
        """Usage statistics for a month (defaults to the current period)."""
        now = self._local_now()
        target_year = year or now.year
        target_month = month or now.month
        period_key = self.period_key_for(target_year, target_month)

        record = await self.repository.get(user_id, period_key)
        limit = plan.features.characters_per_month if plan else 0
        used = record.characters_used if record else 0

        return UsageStats(
            period_key=period_key,
            year=target_year,
            month=target_month,
            characters_used=used,
            characters_limit=limit,
            remaining_characters=max(0, limit - used),
            usage_percentage=usage_percentage(used, limit),
            requests_count=record.requests_count if record else 0,
            audio_files_generated=record.audio_files_generated if record else 0,
            total_audio_duration_seconds=record.total_audio_duration_seconds if record else 0,
            has_exceeded_limit=used > limit if plan else False,
            last_used_at=record.last_used_at if record else None,
        )
