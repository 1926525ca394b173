"""
Shared test fixtures for the ttsgate test suite.
"""

from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from ttsgate.config import RetentionConfig, StorageConfig, SynthesisConfig
from ttsgate.models.job import VoiceInfo
from ttsgate.models.subscription import Plan, PlanFeatures, Subscription, SubscriptionStatus
from ttsgate.services.admission import ConcurrencyAdmissionController
from ttsgate.services.entitlement_service import (
    EntitlementService,
    InMemorySubscriptionRepository,
)
from ttsgate.services.job_store import InMemoryJobRepository
from ttsgate.services.quota_service import InMemoryUsageRepository, QuotaLedger
from ttsgate.services.retention_service import RetentionService
from ttsgate.services.speech_provider import SynthesisAdapter, SynthesisResult
from ttsgate.services.storage_service import ArtifactStore, InMemoryObjectStorage
from ttsgate.services.synthesis_orchestrator import SynthesisOrchestrator

MAINTENANCE_TOKEN = "maintenance-test-token"


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class FakeSpeechProvider:
    """Speech provider double: records calls, bills like the real neural surcharge."""

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.voices = [
            VoiceInfo(id="alloy", name="Alloy", language="en-US", supported_engines=["standard", "neural"]),
            VoiceInfo(id="nova", name="Nova", language="en-US", supported_engines=["standard", "neural"]),
        ]

    async def synthesize(self, text, voice_id, *, audio_format, engine):
        self.calls.append(
            {"text": text, "voice_id": voice_id, "audio_format": audio_format, "engine": engine}
        )
        if self.error is not None:
            raise self.error
        billed = -(-len(text) * 3 // 2) if engine == "neural" else len(text)
        return SynthesisResult(
            audio_bytes=f"AUDIO[{voice_id}]:{text}".encode(),
            content_type="audio/mpeg",
            billed_characters=billed,
        )

    async def list_voices(self, language_code=None, engine=None):
        return list(self.voices)


class Pipeline:
    """Fully in-memory pipeline wired the same way the app wires it."""

    def __init__(self, clock: MutableClock) -> None:
        self.clock = clock
        self.subscriptions = InMemorySubscriptionRepository()
        self.usage = InMemoryUsageRepository()
        self.jobs = InMemoryJobRepository()
        self.storage = InMemoryObjectStorage(now_provider=clock.now)
        self.provider = FakeSpeechProvider()
        self.entitlements = EntitlementService(self.subscriptions, now_provider=clock.now)
        self.quota = QuotaLedger(self.usage, now_provider=clock.now)
        self.admission = ConcurrencyAdmissionController(self.jobs)
        self.synthesis = SynthesisAdapter(self.provider, SynthesisConfig())
        self.artifacts = ArtifactStore(self.storage, StorageConfig())
        self.orchestrator = SynthesisOrchestrator(
            entitlements=self.entitlements,
            quota=self.quota,
            admission=self.admission,
            synthesis=self.synthesis,
            artifacts=self.artifacts,
            jobs=self.jobs,
            now_provider=clock.now,
        )
        self.retention = RetentionService(
            self.jobs, self.usage, self.artifacts, RetentionConfig(), now_provider=clock.now
        )

    def subscribe(
        self,
        user_id: str,
        *,
        characters_per_month: int = 5000,
        concurrency_limit: int | None = None,
        audio_formats: list[str] | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        end_date: datetime | None = None,
    ) -> tuple[Subscription, Plan]:
        plan = self.subscriptions.add_plan(
            Plan(
                id=f"plan-{user_id}",
                name="Test Plan",
                features=PlanFeatures(
                    characters_per_month=characters_per_month,
                    concurrency_limit=concurrency_limit,
                    audio_formats=audio_formats or ["mp3", "wav", "ogg"],
                ),
            )
        )
        subscription = self.subscriptions.add_subscription(
            Subscription(
                id=f"sub-{user_id}",
                user_id=user_id,
                plan_id=plan.id,
                status=status,
                start_date=self.clock.now() - timedelta(days=1),
                end_date=end_date,
                created_at=self.clock.now(),
            )
        )
        return subscription, plan


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
    monkeypatch.setenv("MAINTENANCE_TOKEN", MAINTENANCE_TOKEN)
    # Never talk to a real Supabase project from tests
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def pipeline(clock: MutableClock) -> Pipeline:
    return Pipeline(clock)


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from ttsgate.config import get_settings

    get_settings.cache_clear()

    from ttsgate.main import app

    return TestClient(app)
