"""
Request orchestrator for text-to-speech conversions.

Runs the gated pipeline for one request:

    validate -> entitlement -> quota pre-check -> voice -> job (processing)
    -> admission -> synthesize -> store -> sign -> finalize job -> commit usage

Every error raised before the job exists leaves no side effects. Every error
after it moves the job to ``failed`` before propagating, so a job is never
left in ``processing`` once ``convert`` returns, raises or is cancelled. Usage is only
committed after the audio is stored and the job is finalized.
"""

import asyncio
import math
import uuid
from datetime import UTC, datetime

import structlog

from ttsgate.errors import (
    ConcurrencyLimitExceededError,
    InvalidInputError,
    InvalidVoiceError,
    NoSubscriptionError,
    NotFoundError,
    QuotaExceededError,
    SubscriptionExpiredError,
    SubscriptionInactiveError,
    UnsupportedFormatError,
)
from ttsgate.models.job import (
    ConversionRequest,
    ConversionResult,
    DownloadLink,
    JobPage,
    JobStatus,
    JobSummary,
    Pagination,
    SynthesisJob,
)
from ttsgate.models.subscription import Plan
from ttsgate.models.usage import UsageStats
from ttsgate.services.admission import ConcurrencyAdmissionController
from ttsgate.services.entitlement_service import EntitlementService
from ttsgate.services.job_store import JobRepository
from ttsgate.services.quota_service import QuotaLedger
from ttsgate.services.speech_provider import SynthesisAdapter
from ttsgate.services.storage_service import ArtifactStore

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SynthesisOrchestrator:
    """Coordinates the gate, ledger, admission, synthesis and storage."""

    def __init__(
        self,
        entitlements: EntitlementService,
        quota: QuotaLedger,
        admission: ConcurrencyAdmissionController,
        synthesis: SynthesisAdapter,
        artifacts: ArtifactStore,
        jobs: JobRepository,
        max_text_length: int = 300_000,
        now_provider=_utcnow,
    ) -> None:
        self.entitlements = entitlements
        self.quota = quota
        self.admission = admission
        self.synthesis = synthesis
        self.artifacts = artifacts
        self.jobs = jobs
        self.max_text_length = max_text_length
        self.now_provider = now_provider

    def _validate(self, request: ConversionRequest) -> None:
        if not request.text or not request.text.strip():
            raise InvalidInputError("Text is required")
        if len(request.text) > self.max_text_length:
            raise InvalidInputError(
                f"Text is too long (max {self.max_text_length} characters)",
                telemetry={"max_length": self.max_text_length, "length": len(request.text)},
            )
        if not request.voice_id:
            raise InvalidInputError("Voice ID is required")
        self.synthesis.validate_options(request.output_format, request.engine)

    @staticmethod
    def _check_format_allowed(plan: Plan, audio_format: str) -> None:
        allowed = plan.features.audio_formats
        if allowed and audio_format not in allowed:
            raise UnsupportedFormatError(
                f"Your plan does not include {audio_format} output",
                telemetry={"allowed_formats": list(allowed)},
            )

    async def _fail(
        self, job: SynthesisJob, exc: BaseException, message: str | None = None
    ) -> None:
        """Persist the failed state; the original error is re-raised by the caller."""
        message = message or getattr(exc, "message", None) or str(exc)
        try:
            await self.jobs.update(job.failed(message, now=self.now_provider()))
        except Exception:
            logger.exception("job_fail_persist_failed", job_id=job.id)
        logger.warning(
            "synthesis_job_failed",
            job_id=job.id,
            user_id=job.user_id,
            error=message,
            error_type=type(exc).__name__,
        )

    async def convert(self, user_id: str, request: ConversionRequest) -> ConversionResult:
        """
        Convert text to a stored audio artifact with a signed retrieval URL.

        Raises:
            InvalidInputError, UnsupportedFormatError, UnsupportedEngineError,
            NoSubscriptionError, SubscriptionInactiveError,
            SubscriptionExpiredError, QuotaExceededError, InvalidVoiceError:
                Before any job is created.
            ConcurrencyLimitExceededError, SynthesisProviderError,
            StorageError, SigningError: After job creation; the job is
                persisted as ``failed``.
        """
        self._validate(request)

        entitlement = await self.entitlements.resolve(user_id)
        plan = entitlement.plan
        text_length = len(request.text)

        check = await self.quota.check_quota(
            user_id, entitlement.subscription.id, plan, text_length
        )
        if not check.allowed:
            raise QuotaExceededError(
                telemetry={
                    "characters_used": check.characters_used,
                    "characters_limit": check.characters_limit,
                    "requested_characters": text_length,
                    "remaining": check.remaining,
                    "usage_percentage": check.usage_percentage,
                    "reset_at": check.reset_at.isoformat(),
                }
            )
        self._check_format_allowed(plan, request.output_format)

        voice = await self.synthesis.get_voice(request.voice_id)
        if voice is None:
            raise InvalidVoiceError(telemetry={"voice_id": request.voice_id})

        job = SynthesisJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            filename=f"tts_{uuid.uuid4()}.{request.output_format}",
            original_text=request.text,
            text_length=text_length,
            voice=voice,
            audio_format=request.output_format,
            engine=request.engine,
            status=JobStatus.PROCESSING,
            created_at=self.now_provider(),
        )
        await self.jobs.create(job)
        log = logger.bind(job_id=job.id, user_id=user_id)
        log.info("synthesis_job_created", text_length=text_length, voice=voice.id)

        try:
            decision = await self.admission.evaluate(user_id, plan, exclude_job_id=job.id)
            if not decision.allowed:
                raise ConcurrencyLimitExceededError(
                    telemetry={
                        "active_requests": decision.active_requests,
                        "max_allowed": decision.max_allowed,
                    }
                )

            result = await self.synthesis.synthesize(
                request.text, voice.id, audio_format=request.output_format, engine=request.engine
            )
            duration = self.synthesis.estimate_duration(request.text)
            artifact = await self.artifacts.store(
                result.audio_bytes, user_id, job.filename, result.content_type
            )
            ttl = self.artifacts.config.signed_url_ttl_seconds
            url = await self.artifacts.get_signed_url(artifact.key, job.filename, ttl)

            completed = job.completed(
                storage_key=artifact.key,
                file_size_bytes=artifact.size_bytes,
                duration_seconds=duration,
                billed_characters=result.billed_characters,
                retrieval_url=url,
                now=self.now_provider(),
            )
            await self.jobs.update(completed)
        except asyncio.CancelledError as e:
            # The client went away mid-synthesis; the job must not stay in processing
            await asyncio.shield(self._fail(job, e, message="Synthesis was cancelled"))
            raise
        except Exception as e:
            await self._fail(job, e)
            raise

        record = await self.quota.commit(check.usage_record, result.billed_characters, duration)
        log.info(
            "synthesis_job_completed",
            billed_characters=result.billed_characters,
            file_size_bytes=artifact.size_bytes,
            duration_seconds=duration,
        )

        return ConversionResult(
            job_id=completed.id,
            filename=completed.filename,
            retrieval_url=url,
            expires_in=ttl,
            duration_seconds=duration,
            file_size_bytes=artifact.size_bytes,
            billed_characters=result.billed_characters,
            voice=voice,
            created_at=completed.created_at,
            usage=self.quota.snapshot(record, plan),
        )

    async def _owned_job(self, user_id: str, job_id: str) -> SynthesisJob:
        job = await self.jobs.get(job_id)
        if job is None or job.user_id != user_id:
            raise NotFoundError()
        return job

    async def get_download_link(self, user_id: str, job_id: str) -> DownloadLink:
        """Fresh signed URL for a completed job; records the download."""
        job = await self._owned_job(user_id, job_id)
        if job.status is not JobStatus.COMPLETED or not job.storage_key:
            raise NotFoundError()

        ttl = self.artifacts.config.signed_url_ttl_seconds
        url = await self.artifacts.get_signed_url(job.storage_key, job.filename, ttl)
        await self.jobs.record_download(job.id, self.now_provider())
        return DownloadLink(download_url=url, filename=job.filename, expires_in=ttl)

    async def list_jobs(
        self,
        user_id: str,
        status: JobStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> JobPage:
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        jobs, total = await self.jobs.list_for_user(
            user_id, status=status, offset=(page - 1) * limit, limit=limit
        )
        pages = math.ceil(total / limit) if total else 0
        return JobPage(
            jobs=[JobSummary.from_job(job) for job in jobs],
            pagination=Pagination(
                current=page,
                pages=pages,
                total=total,
                has_next=page < pages,
                has_prev=page > 1,
            ),
        )

    async def delete_job(self, user_id: str, job_id: str) -> None:
        job = await self._owned_job(user_id, job_id)
        if job.storage_key:
            try:
                await self.artifacts.delete(job.storage_key)
            except Exception as e:
                logger.warning("job_artifact_delete_failed", job_id=job_id, error=str(e))
        await self.jobs.delete(job_id)
        logger.info("synthesis_job_deleted", job_id=job_id, user_id=user_id)

    async def get_usage(
        self, user_id: str, year: int | None = None, month: int | None = None
    ) -> UsageStats:
        """Usage statistics; the limit is 0 when the user has no valid subscription."""
        plan: Plan | None
        try:
            plan = (await self.entitlements.resolve(user_id)).plan
        except (NoSubscriptionError, SubscriptionInactiveError, SubscriptionExpiredError):
            plan = None
        return await self.quota.get_usage_stats(user_id, plan, year=year, month=month)
