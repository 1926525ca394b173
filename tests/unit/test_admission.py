"""Unit tests for the concurrency admission controller."""

from ttsgate.models.job import JobStatus, SynthesisJob, VoiceInfo
from ttsgate.models.subscription import Plan, PlanFeatures
from ttsgate.services.admission import ConcurrencyAdmissionController
from ttsgate.services.job_store import InMemoryJobRepository


def _job(job_id: str, user_id: str, clock, status: JobStatus = JobStatus.PROCESSING) -> SynthesisJob:
    return SynthesisJob(
        id=job_id,
        user_id=user_id,
        filename=f"tts_{job_id}.mp3",
        original_text="hello",
        text_length=5,
        voice=VoiceInfo(id="alloy", name="Alloy"),
        status=status,
        created_at=clock.now(),
    )


def _plan(limit: int | None) -> Plan:
    return Plan(id="p", name="P", features=PlanFeatures(concurrency_limit=limit))


class TestAdmission:
    async def test_below_limit_admitted(self, clock):
        jobs = InMemoryJobRepository()
        await jobs.create(_job("j1", "user-a", clock))
        controller = ConcurrencyAdmissionController(jobs)

        decision = await controller.evaluate("user-a", _plan(2))

        assert decision.allowed is True
        assert decision.active_requests == 1
        assert decision.max_allowed == 2

    async def test_at_limit_denied(self, clock):
        jobs = InMemoryJobRepository()
        await jobs.create(_job("j1", "user-a", clock))
        controller = ConcurrencyAdmissionController(jobs)

        assert await controller.admit("user-a", _plan(1)) is False

    async def test_own_job_excluded(self, clock):
        jobs = InMemoryJobRepository()
        await jobs.create(_job("mine", "user-a", clock))
        controller = ConcurrencyAdmissionController(jobs)

        assert await controller.admit("user-a", _plan(1), exclude_job_id="mine") is True

    async def test_terminal_and_foreign_jobs_not_counted(self, clock):
        jobs = InMemoryJobRepository()
        await jobs.create(_job("done", "user-a", clock, JobStatus.COMPLETED))
        await jobs.create(_job("broken", "user-a", clock, JobStatus.FAILED))
        await jobs.create(_job("other", "user-b", clock))
        controller = ConcurrencyAdmissionController(jobs)

        decision = await controller.evaluate("user-a", _plan(1))

        assert decision.active_requests == 0
        assert decision.allowed is True

    async def test_default_limit_when_plan_silent(self, clock):
        controller = ConcurrencyAdmissionController(InMemoryJobRepository(), default_limit=3)

        assert controller.limit_for(_plan(None)) == 3

    async def test_explicit_plan_limit_overrides_default(self, clock):
        controller = ConcurrencyAdmissionController(InMemoryJobRepository(), default_limit=3)

        assert controller.limit_for(_plan(1)) == 1
