"""Unit tests for the request orchestrator."""

import asyncio
from datetime import timedelta

import pytest

from ttsgate.errors import (
    ConcurrencyLimitExceededError,
    InvalidInputError,
    InvalidVoiceError,
    NoSubscriptionError,
    NotFoundError,
    QuotaExceededError,
    SigningError,
    StorageError,
    SubscriptionExpiredError,
    SynthesisProviderError,
    UnsupportedFormatError,
)
from ttsgate.models.job import ConversionRequest, JobStatus, SynthesisJob, VoiceInfo


def _request(text: str = "Hello world", **overrides) -> ConversionRequest:
    return ConversionRequest(text=text, voice_id=overrides.pop("voice_id", "alloy"), **overrides)


async def _usage(pipeline, user_id: str = "user-a") -> int:
    record = await pipeline.usage.get(user_id, pipeline.quota.current_period_key())
    return record.characters_used if record else 0


class TestConvertHappyPath:
    async def test_convert_stores_audio_and_commits_usage(self, pipeline):
        pipeline.subscribe("user-a")

        result = await pipeline.orchestrator.convert("user-a", _request())

        job = pipeline.jobs.jobs[result.job_id]
        assert job.status == JobStatus.COMPLETED
        assert job.storage_key is not None
        assert job.billed_characters == 11
        assert job.completed_at == pipeline.clock.now()
        assert result.filename.startswith("tts_") and result.filename.endswith(".mp3")
        assert result.expires_in == 3600
        assert result.duration_seconds == 1
        assert pipeline.storage.resolve_signed_url(result.retrieval_url) == b"AUDIO[alloy]:Hello world"
        assert result.usage.characters_used == 11
        assert await _usage(pipeline) == 11

    async def test_neural_request_billed_by_provider_count(self, pipeline):
        pipeline.subscribe("user-a")

        result = await pipeline.orchestrator.convert("user-a", _request(engine="neural"))

        assert result.billed_characters == 17
        assert await _usage(pipeline) == 17

    async def test_retrieval_url_not_persisted(self, pipeline):
        pipeline.subscribe("user-a")

        result = await pipeline.orchestrator.convert("user-a", _request())

        stored = pipeline.jobs.jobs[result.job_id]
        assert "retrieval_url" not in stored.model_dump()


class TestConvertRejectedBeforeJob:
    async def test_no_subscription_creates_no_job(self, pipeline):
        with pytest.raises(NoSubscriptionError):
            await pipeline.orchestrator.convert("user-a", _request())

        assert pipeline.jobs.jobs == {}
        assert pipeline.provider.calls == []

    async def test_expired_subscription(self, pipeline, clock):
        pipeline.subscribe("user-a", end_date=clock.now() - timedelta(days=1))

        with pytest.raises(SubscriptionExpiredError):
            await pipeline.orchestrator.convert("user-a", _request())

        assert pipeline.jobs.jobs == {}

    @pytest.mark.parametrize("text", ["", "   "])
    async def test_blank_text(self, pipeline, text):
        pipeline.subscribe("user-a")

        with pytest.raises(InvalidInputError):
            await pipeline.orchestrator.convert("user-a", _request(text))

    async def test_text_too_long(self, pipeline):
        pipeline.subscribe("user-a", characters_per_month=1_000_000)

        with pytest.raises(InvalidInputError) as exc_info:
            await pipeline.orchestrator.convert("user-a", _request("a" * 300_001))

        assert exc_info.value.telemetry["max_length"] == 300_000

    async def test_over_quota_rejected_before_provider_call(self, pipeline):
        pipeline.subscribe("user-a", characters_per_month=5000)
        await pipeline.usage.increment(
            user_id="user-a",
            subscription_id="sub-user-a",
            period_key=pipeline.quota.current_period_key(),
            characters=4990,
            duration_seconds=0,
            used_at=pipeline.clock.now(),
        )

        with pytest.raises(QuotaExceededError) as exc_info:
            await pipeline.orchestrator.convert("user-a", _request("x" * 20))

        telemetry = exc_info.value.telemetry
        assert telemetry["remaining"] == 10
        assert telemetry["usage_percentage"] == 99.8
        assert telemetry["requested_characters"] == 20
        assert pipeline.provider.calls == []
        assert pipeline.jobs.jobs == {}
        assert await _usage(pipeline) == 4990

    async def test_format_outside_plan(self, pipeline):
        pipeline.subscribe("user-a", audio_formats=["mp3"])

        with pytest.raises(UnsupportedFormatError) as exc_info:
            await pipeline.orchestrator.convert("user-a", _request(output_format="wav"))

        assert exc_info.value.telemetry["allowed_formats"] == ["mp3"]

    async def test_unknown_voice(self, pipeline):
        pipeline.subscribe("user-a")

        with pytest.raises(InvalidVoiceError):
            await pipeline.orchestrator.convert("user-a", _request(voice_id="nobody"))

        assert pipeline.jobs.jobs == {}


class TestConvertFailuresAfterJob:
    async def test_concurrency_limit(self, pipeline, clock):
        pipeline.subscribe("user-a", concurrency_limit=1)
        await pipeline.jobs.create(
            SynthesisJob(
                id="in-flight",
                user_id="user-a",
                filename="tts_in-flight.mp3",
                original_text="busy",
                text_length=4,
                voice=VoiceInfo(id="alloy", name="Alloy"),
                created_at=clock.now(),
            )
        )

        with pytest.raises(ConcurrencyLimitExceededError) as exc_info:
            await pipeline.orchestrator.convert("user-a", _request())

        assert exc_info.value.telemetry == {"active_requests": 1, "max_allowed": 1}
        assert pipeline.provider.calls == []
        statuses = sorted(job.status.value for job in pipeline.jobs.jobs.values())
        assert statuses == ["failed", "processing"]

    async def test_provider_failure_marks_job_failed_and_keeps_usage(self, pipeline):
        pipeline.subscribe("user-a")
        pipeline.provider.error = RuntimeError("provider exploded")

        with pytest.raises(SynthesisProviderError):
            await pipeline.orchestrator.convert("user-a", _request())

        (job,) = pipeline.jobs.jobs.values()
        assert job.status == JobStatus.FAILED
        assert "provider exploded" in job.error_message
        assert await _usage(pipeline) == 0

    async def test_storage_failure_marks_job_failed(self, pipeline, monkeypatch):
        pipeline.subscribe("user-a")

        async def broken_put(key, data, content_type):
            raise OSError("disk full")

        monkeypatch.setattr(pipeline.storage, "put", broken_put)

        with pytest.raises(StorageError):
            await pipeline.orchestrator.convert("user-a", _request())

        (job,) = pipeline.jobs.jobs.values()
        assert job.status == JobStatus.FAILED
        assert await _usage(pipeline) == 0

    async def test_signing_failure_marks_job_failed(self, pipeline, monkeypatch):
        pipeline.subscribe("user-a")

        async def broken_sign(key, filename, ttl_seconds):
            raise RuntimeError("signer offline")

        monkeypatch.setattr(pipeline.storage, "sign", broken_sign)

        with pytest.raises(SigningError):
            await pipeline.orchestrator.convert("user-a", _request())

        (job,) = pipeline.jobs.jobs.values()
        assert job.status == JobStatus.FAILED
        assert job.storage_key is None
        assert await _usage(pipeline) == 0

    async def test_cancelled_request_marks_job_failed_and_frees_slot(self, pipeline):
        pipeline.subscribe("user-a", concurrency_limit=1)
        started = asyncio.Event()

        async def hanging_synthesize(text, voice_id, *, audio_format, engine):
            started.set()
            await asyncio.Event().wait()

        pipeline.provider.synthesize = hanging_synthesize
        task = asyncio.create_task(pipeline.orchestrator.convert("user-a", _request()))
        await started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        (job,) = pipeline.jobs.jobs.values()
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Synthesis was cancelled"
        assert await _usage(pipeline) == 0

        del pipeline.provider.synthesize
        result = await pipeline.orchestrator.convert("user-a", _request())
        assert pipeline.jobs.jobs[result.job_id].status == JobStatus.COMPLETED


class TestJobOperations:
    async def test_download_link_refresh_counts_downloads(self, pipeline):
        pipeline.subscribe("user-a")
        result = await pipeline.orchestrator.convert("user-a", _request())

        link = await pipeline.orchestrator.get_download_link("user-a", result.job_id)

        assert link.filename == result.filename
        assert pipeline.storage.resolve_signed_url(link.download_url) == b"AUDIO[alloy]:Hello world"
        assert pipeline.jobs.jobs[result.job_id].download_count == 1

    async def test_concurrent_download_refreshes_all_counted(self, pipeline):
        pipeline.subscribe("user-a")
        result = await pipeline.orchestrator.convert("user-a", _request())

        await asyncio.gather(
            *(pipeline.orchestrator.get_download_link("user-a", result.job_id) for _ in range(10))
        )

        job = pipeline.jobs.jobs[result.job_id]
        assert job.download_count == 10
        assert job.last_downloaded_at == pipeline.clock.now()

    async def test_download_link_other_user(self, pipeline):
        pipeline.subscribe("user-a")
        result = await pipeline.orchestrator.convert("user-a", _request())

        with pytest.raises(NotFoundError):
            await pipeline.orchestrator.get_download_link("user-b", result.job_id)

    async def test_download_link_failed_job(self, pipeline):
        pipeline.subscribe("user-a")
        pipeline.provider.error = RuntimeError("nope")
        with pytest.raises(SynthesisProviderError):
            await pipeline.orchestrator.convert("user-a", _request())
        (job_id,) = pipeline.jobs.jobs

        with pytest.raises(NotFoundError):
            await pipeline.orchestrator.get_download_link("user-a", job_id)

    async def test_list_jobs_paginates_newest_first(self, pipeline, clock):
        pipeline.subscribe("user-a", characters_per_month=100_000)
        ids = []
        for i in range(3):
            ids.append((await pipeline.orchestrator.convert("user-a", _request(f"text {i}"))).job_id)
            clock.advance(timedelta(minutes=1))

        page = await pipeline.orchestrator.list_jobs("user-a", page=1, limit=2)

        assert [job.id for job in page.jobs] == [ids[2], ids[1]]
        assert page.pagination.total == 3
        assert page.pagination.pages == 2
        assert page.pagination.has_next is True
        assert page.pagination.has_prev is False

    async def test_delete_job_removes_audio(self, pipeline):
        pipeline.subscribe("user-a")
        result = await pipeline.orchestrator.convert("user-a", _request())

        await pipeline.orchestrator.delete_job("user-a", result.job_id)

        assert pipeline.jobs.jobs == {}
        assert pipeline.storage.objects == {}

    async def test_get_usage_without_subscription(self, pipeline):
        stats = await pipeline.orchestrator.get_usage("user-a")

        assert stats.characters_limit == 0
        assert stats.characters_used == 0
