"""Persistence for synthesis job records."""

import threading
from datetime import datetime
from typing import Protocol

from ttsgate.config import TableConfig
from ttsgate.models.job import JobStatus, SynthesisJob
from ttsgate.services import supabase_client as db


class JobRepository(Protocol):
    """Storage contract for synthesis jobs."""

    async def create(self, job: SynthesisJob) -> SynthesisJob:
        """Persist a new job."""

    async def update(self, job: SynthesisJob) -> SynthesisJob:
        """Persist the current state of an existing job."""

    async def get(self, job_id: str) -> SynthesisJob | None:
        """Fetch a job by ID."""

    async def record_download(self, job_id: str, at: datetime) -> SynthesisJob | None:
        """Increment the download counter in place; None if the job does not exist."""

    async def count_processing(self, user_id: str, exclude_job_id: str | None = None) -> int:
        """Number of the user's jobs still in processing."""

    async def list_for_user(
        self, user_id: str, *, status: JobStatus | None, offset: int, limit: int
    ) -> tuple[list[SynthesisJob], int]:
        """One page of the user's jobs (newest first) and the total count."""

    async def list_older_than(self, cutoff: datetime, status: JobStatus) -> list[SynthesisJob]:
        """Jobs with the given status created before the cutoff."""

    async def referenced_storage_keys(self) -> set[str]:
        """Storage keys referenced by any job."""

    async def delete(self, job_id: str) -> bool:
        """Delete a job record. Returns False if it did not exist."""

    async def delete_for_user(self, user_id: str) -> list[SynthesisJob]:
        """Delete all of a user's jobs and return them."""


class InMemoryJobRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.jobs: dict[str, SynthesisJob] = {}
        self._mutex = threading.Lock()

    async def create(self, job: SynthesisJob) -> SynthesisJob:
        with self._mutex:
            if job.id in self.jobs:
                raise ValueError(f"Job {job.id} already exists")
            self.jobs[job.id] = job.model_copy(deep=True)
        return job

    async def update(self, job: SynthesisJob) -> SynthesisJob:
        with self._mutex:
            if job.id not in self.jobs:
                raise KeyError(job.id)
            self.jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get(self, job_id: str) -> SynthesisJob | None:
        with self._mutex:
            job = self.jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def record_download(self, job_id: str, at: datetime) -> SynthesisJob | None:
        with self._mutex:
            job = self.jobs.get(job_id)
            if job is None:
                return None
            job.download_count += 1
            job.last_downloaded_at = at
            return job.model_copy(deep=True)

    async def count_processing(self, user_id: str, exclude_job_id: str | None = None) -> int:
        with self._mutex:
            return sum(
                1
                for job in self.jobs.values()
                if job.user_id == user_id
                and job.status == JobStatus.PROCESSING
                and job.id != exclude_job_id
            )

    async def list_for_user(
        self, user_id: str, *, status: JobStatus | None, offset: int, limit: int
    ) -> tuple[list[SynthesisJob], int]:
        with self._mutex:
            owned = [
                job
                for job in self.jobs.values()
                if job.user_id == user_id and (status is None or job.status == status)
            ]
        owned.sort(key=lambda job: job.created_at, reverse=True)
        page = owned[offset : offset + limit]
        return [job.model_copy(deep=True) for job in page], len(owned)

    async def list_older_than(self, cutoff: datetime, status: JobStatus) -> list[SynthesisJob]:
        with self._mutex:
            matches = [
                job.model_copy(deep=True)
                for job in self.jobs.values()
                if job.status == status and job.created_at < cutoff
            ]
        return sorted(matches, key=lambda job: job.created_at)

    async def referenced_storage_keys(self) -> set[str]:
        with self._mutex:
            return {job.storage_key for job in self.jobs.values() if job.storage_key}

    async def delete(self, job_id: str) -> bool:
        with self._mutex:
            return self.jobs.pop(job_id, None) is not None

    async def delete_for_user(self, user_id: str) -> list[SynthesisJob]:
        with self._mutex:
            owned = [job for job in self.jobs.values() if job.user_id == user_id]
            for job in owned:
                del self.jobs[job.id]
        return owned


class SupabaseJobRepository:
    """Supabase-backed job records."""

    def __init__(self, client, tables: TableConfig):
        self.client = client
        self.tables = tables

    async def create(self, job: SynthesisJob) -> SynthesisJob:
        await db.insert_job(self.client, self.tables, job.model_dump(mode="json"))
        return job

    async def update(self, job: SynthesisJob) -> SynthesisJob:
        payload = job.model_dump(mode="json", exclude={"id", "user_id", "created_at"})
        row = await db.update_job(self.client, self.tables, job.id, payload)
        if row is None:
            raise KeyError(job.id)
        return job

    async def get(self, job_id: str) -> SynthesisJob | None:
        row = await db.get_job(self.client, self.tables, job_id)
        return SynthesisJob.model_validate(row) if row else None

    async def record_download(self, job_id: str, at: datetime) -> SynthesisJob | None:
        row = await db.record_job_download(self.client, self.tables, job_id, at)
        return SynthesisJob.model_validate(row) if row else None

    async def count_processing(self, user_id: str, exclude_job_id: str | None = None) -> int:
        return await db.count_processing_jobs(self.client, self.tables, user_id, exclude_job_id)

    async def list_for_user(
        self, user_id: str, *, status: JobStatus | None, offset: int, limit: int
    ) -> tuple[list[SynthesisJob], int]:
        rows, total = await db.list_user_jobs(
            self.client,
            self.tables,
            user_id,
            status=status.value if status else None,
            offset=offset,
            limit=limit,
        )
        return [SynthesisJob.model_validate(row) for row in rows], total

    async def list_older_than(self, cutoff: datetime, status: JobStatus) -> list[SynthesisJob]:
        rows = await db.list_jobs_older_than(self.client, self.tables, cutoff, status.value)
        return [SynthesisJob.model_validate(row) for row in rows]

    async def referenced_storage_keys(self) -> set[str]:
        return await db.list_job_storage_keys(self.client, self.tables)

    async def delete(self, job_id: str) -> bool:
        return await db.delete_job(self.client, self.tables, job_id)

    async def delete_for_user(self, user_id: str) -> list[SynthesisJob]:
        rows = await db.delete_user_jobs(self.client, self.tables, user_id)
        return [SynthesisJob.model_validate(row) for row in rows]
