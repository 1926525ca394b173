"""Synthesis job records and the request/response models built around them."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ttsgate.constants import DEFAULT_ENGINE, DEFAULT_FORMAT
from ttsgate.models.usage import UsageSnapshot


class JobStatus(str, Enum):
    """Lifecycle states of a synthesis job."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VoiceInfo(BaseModel):
    """A voice offered by the speech provider."""

    id: str
    name: str
    language: str | None = None
    language_name: str | None = None
    gender: str | None = None
    supported_engines: list[str] = Field(default_factory=list)


class SynthesisJob(BaseModel):
    """
    Lifecycle record of one text-to-audio conversion.

    Created in ``processing`` and moved to exactly one terminal state.
    Terminal jobs only change their download counters. ``retrieval_url`` is
    ephemeral and excluded from serialization so it is never persisted.
    """

    id: str
    user_id: str
    filename: str
    original_text: str
    text_length: int = Field(ge=0)
    voice: VoiceInfo
    audio_format: str = DEFAULT_FORMAT
    engine: str = DEFAULT_ENGINE
    status: JobStatus = JobStatus.PROCESSING
    storage_key: str | None = None
    retrieval_url: str | None = Field(default=None, exclude=True)
    duration_seconds: int = Field(default=0, ge=0)
    file_size_bytes: int = Field(default=0, ge=0)
    billed_characters: int | None = None
    error_message: str | None = None
    download_count: int = Field(default=0, ge=0)
    created_at: datetime
    completed_at: datetime | None = None
    last_downloaded_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not JobStatus.PROCESSING

    def _require_processing(self, target: JobStatus) -> None:
        if self.is_terminal:
            raise ValueError(
                f"Job {self.id} is already {self.status.value}; cannot move to {target.value}"
            )

    def completed(
        self,
        *,
        storage_key: str,
        file_size_bytes: int,
        duration_seconds: int,
        billed_characters: int,
        retrieval_url: str,
        now: datetime,
    ) -> "SynthesisJob":
        """Return a completed copy of this job."""
        self._require_processing(JobStatus.COMPLETED)
        return self.model_copy(
            update={
                "status": JobStatus.COMPLETED,
                "storage_key": storage_key,
                "file_size_bytes": file_size_bytes,
                "duration_seconds": duration_seconds,
                "billed_characters": billed_characters,
                "retrieval_url": retrieval_url,
                "completed_at": now,
            }
        )

    def failed(self, error_message: str, *, now: datetime) -> "SynthesisJob":
        """Return a failed copy of this job."""
        self._require_processing(JobStatus.FAILED)
        return self.model_copy(
            update={
                "status": JobStatus.FAILED,
                "error_message": error_message or "Unknown error",
                "completed_at": now,
            }
        )


class ConversionRequest(BaseModel):
    """Body of a text-to-speech conversion request."""

    text: str = Field(description="Text to synthesize (1..300000 characters)")
    voice_id: str = Field(description="Voice identifier from the voice catalog")
    output_format: str = Field(default=DEFAULT_FORMAT, description="mp3, wav or ogg")
    engine: str = Field(default=DEFAULT_ENGINE, description="standard or neural")


class ConversionResult(BaseModel):
    """Successful conversion summary."""

    job_id: str
    filename: str
    retrieval_url: str
    expires_in: int
    duration_seconds: int
    file_size_bytes: int
    billed_characters: int
    voice: VoiceInfo
    created_at: datetime
    usage: UsageSnapshot


class DownloadLink(BaseModel):
    """Fresh signed link for a completed job."""

    download_url: str
    filename: str
    expires_in: int


class JobSummary(BaseModel):
    """Job listing entry (no original text)."""

    id: str
    filename: str
    text_length: int
    voice: VoiceInfo
    audio_format: str
    engine: str
    status: JobStatus
    duration_seconds: int
    file_size_bytes: int
    billed_characters: int | None = None
    error_message: str | None = None
    download_count: int = 0
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: SynthesisJob) -> "JobSummary":
        return cls.model_validate(job.model_dump(exclude={"original_text", "user_id"}))


class Pagination(BaseModel):
    current: int
    pages: int
    total: int
    has_next: bool
    has_prev: bool


class JobPage(BaseModel):
    """Paginated job listing."""

    jobs: list[JobSummary]
    pagination: Pagination
