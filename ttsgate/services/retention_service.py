"""
Retention and account teardown.

Periodic cleanup deletes old completed jobs with their audio, old failed
jobs, and storage objects no job references. It also fails jobs stuck in
``processing`` past any plausible synthesis time, which frees their
concurrency slots. Runs are single-flight through
a ``CleanupState`` owned by the caller (the app keeps one on ``app.state``).
"""

import asyncio
from datetime import UTC, datetime, timedelta
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from ttsgate.config import RetentionConfig
from ttsgate.models.job import JobStatus
from ttsgate.services.job_store import JobRepository
from ttsgate.services.quota_service import UsageRepository
from ttsgate.services.storage_service import ArtifactStore

logger = structlog.get_logger(__name__)

STALE_JOB_MESSAGE = "Synthesis did not finish in time"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CleanupKind(str, Enum):
    FILES = "files"
    FAILED = "failed"
    ORPHANED = "orphaned"
    STALE = "stale"
    ALL = "all"


class CleanupState:
    """Tracks whether a cleanup run is in progress."""

    def __init__(self) -> None:
        self.running = False
        self.last_run_at: datetime | None = None

    def try_acquire(self) -> bool:
        if self.running:
            return False
        self.running = True
        return True

    def release(self, finished_at: datetime) -> None:
        self.running = False
        self.last_run_at = finished_at


class CleanupResult(BaseModel):
    deleted: int = 0
    errors: int = 0


class CleanupSummary(BaseModel):
    skipped: bool = False
    expired_jobs: CleanupResult | None = None
    failed_jobs: CleanupResult | None = None
    orphaned_objects: CleanupResult | None = None
    stale_jobs: CleanupResult | None = None
    errors: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class PurgeResult(BaseModel):
    jobs_deleted: int = 0
    usage_records_deleted: int = 0
    objects_deleted: int = 0
    storage_errors: list[str] = Field(default_factory=list)


class RetentionService:
    def __init__(
        self,
        jobs: JobRepository,
        usage: UsageRepository,
        artifacts: ArtifactStore,
        config: RetentionConfig,
        now_provider=_utcnow,
    ) -> None:
        self.jobs = jobs
        self.usage = usage
        self.artifacts = artifacts
        self.config = config
        self.now_provider = now_provider

    async def cleanup_expired_jobs(self) -> CleanupResult:
        """Delete completed jobs past the retention window, audio first."""
        cutoff = self.now_provider() - timedelta(days=self.config.completed_days)
        result = CleanupResult()
        for job in await self.jobs.list_older_than(cutoff, JobStatus.COMPLETED):
            try:
                if job.storage_key:
                    await self.artifacts.delete(job.storage_key)
                await self.jobs.delete(job.id)
                result.deleted += 1
            except Exception as e:
                result.errors += 1
                logger.warning("expired_job_cleanup_failed", job_id=job.id, error=str(e))
        logger.info("expired_jobs_cleaned", deleted=result.deleted, errors=result.errors)
        return result

    async def cleanup_failed_jobs(self) -> CleanupResult:
        cutoff = self.now_provider() - timedelta(days=self.config.failed_days)
        result = CleanupResult()
        for job in await self.jobs.list_older_than(cutoff, JobStatus.FAILED):
            try:
                await self.jobs.delete(job.id)
                result.deleted += 1
            except Exception as e:
                result.errors += 1
                logger.warning("failed_job_cleanup_failed", job_id=job.id, error=str(e))
        logger.info("failed_jobs_cleaned", deleted=result.deleted, errors=result.errors)
        return result

    async def cleanup_orphaned_objects(self) -> CleanupResult:
        """Bulk-delete unreferenced audio objects older than the grace period."""
        cutoff = self.now_provider() - timedelta(hours=self.config.orphan_grace_hours)
        referenced = await self.jobs.referenced_storage_keys()
        orphans = [
            obj.key
            for obj in await self.artifacts.list_objects()
            if obj.key not in referenced
            and obj.last_modified is not None
            and obj.last_modified < cutoff
        ]
        outcome = await self.artifacts.delete_many(orphans)
        logger.info("orphaned_objects_cleaned", deleted=outcome.deleted, errors=len(outcome.errors))
        return CleanupResult(deleted=outcome.deleted, errors=len(outcome.errors))

    async def cleanup_stale_processing_jobs(self) -> CleanupResult:
        """Mark jobs stuck in processing as failed; no usage is committed for them."""
        now = self.now_provider()
        cutoff = now - timedelta(minutes=self.config.stale_processing_minutes)
        result = CleanupResult()
        for job in await self.jobs.list_older_than(cutoff, JobStatus.PROCESSING):
            try:
                await self.jobs.update(job.failed(STALE_JOB_MESSAGE, now=now))
                result.deleted += 1
            except Exception as e:
                result.errors += 1
                logger.warning("stale_job_cleanup_failed", job_id=job.id, error=str(e))
        logger.info("stale_jobs_failed", failed=result.deleted, errors=result.errors)
        return result

    async def run_full_cleanup(self, state: CleanupState) -> CleanupSummary:
        """Run every cleanup concurrently; skipped if a run is in progress."""
        if not state.try_acquire():
            logger.info("cleanup_skipped_already_running")
            return CleanupSummary(skipped=True)

        summary = CleanupSummary(started_at=self.now_provider())
        try:
            outcomes = await asyncio.gather(
                self.cleanup_expired_jobs(),
                self.cleanup_failed_jobs(),
                self.cleanup_orphaned_objects(),
                self.cleanup_stale_processing_jobs(),
                return_exceptions=True,
            )
            for field, outcome in zip(
                ("expired_jobs", "failed_jobs", "orphaned_objects", "stale_jobs"),
                outcomes,
                strict=True,
            ):
                if isinstance(outcome, BaseException):
                    logger.warning("cleanup_task_failed", task=field, error=str(outcome))
                    summary.errors.append(f"{field}: {outcome}")
                else:
                    setattr(summary, field, outcome)
        finally:
            summary.finished_at = self.now_provider()
            state.release(summary.finished_at)

        logger.info("cleanup_complete", errors=len(summary.errors))
        return summary

    async def manual_cleanup(self, kind: CleanupKind, state: CleanupState) -> CleanupSummary:
        if kind is CleanupKind.ALL:
            return await self.run_full_cleanup(state)
        if kind is CleanupKind.FILES:
            return CleanupSummary(expired_jobs=await self.cleanup_expired_jobs())
        if kind is CleanupKind.FAILED:
            return CleanupSummary(failed_jobs=await self.cleanup_failed_jobs())
        if kind is CleanupKind.STALE:
            return CleanupSummary(stale_jobs=await self.cleanup_stale_processing_jobs())
        return CleanupSummary(orphaned_objects=await self.cleanup_orphaned_objects())

    async def purge_user_data(self, user_id: str) -> PurgeResult:
        """Delete a user's jobs, usage records and audio objects."""
        jobs = await self.jobs.delete_for_user(user_id)
        usage_deleted = await self.usage.delete_for_user(user_id)
        keys = [job.storage_key for job in jobs if job.storage_key]
        outcome = await self.artifacts.delete_many(keys)
        if outcome.errors:
            logger.warning("user_purge_storage_errors", user_id=user_id, errors=outcome.errors)

        logger.info(
            "user_data_purged",
            user_id=user_id,
            jobs=len(jobs),
            usage_records=usage_deleted,
            objects=outcome.deleted,
        )
        return PurgeResult(
            jobs_deleted=len(jobs),
            usage_records_deleted=usage_deleted,
            objects_deleted=outcome.deleted,
            storage_errors=outcome.errors,
        )
