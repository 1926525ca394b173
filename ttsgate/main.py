"""
ttsgate - Main FastAPI Application.

Subscription-gated text-to-speech: converts text to audio for users with a
valid plan, meters character usage per month and serves the audio through
signed download URLs.

Run with:
    uvicorn ttsgate.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from ttsgate.api.v1.maintenance import router as maintenance_router
from ttsgate.api.v1.tts import router as tts_router
from ttsgate.api.v1.usage import router as usage_router
from ttsgate.config import Settings, get_settings
from ttsgate.constants import API_TITLE, API_VERSION
from ttsgate.logging_config import setup_logging
from ttsgate.middleware import RequestContextMiddleware
from ttsgate.services.admission import ConcurrencyAdmissionController
from ttsgate.services.entitlement_service import (
    EntitlementService,
    InMemorySubscriptionRepository,
    SupabaseSubscriptionRepository,
)
from ttsgate.services.job_store import InMemoryJobRepository, SupabaseJobRepository
from ttsgate.services.openai_client import get_openai_client
from ttsgate.services.quota_service import (
    InMemoryUsageRepository,
    QuotaLedger,
    SupabaseUsageRepository,
)
from ttsgate.services.retention_service import CleanupState, RetentionService
from ttsgate.services.speech_provider import OpenAISpeechProvider, SynthesisAdapter
from ttsgate.services.storage_service import (
    ArtifactStore,
    InMemoryObjectStorage,
    SupabaseObjectStorage,
)
from ttsgate.services.synthesis_orchestrator import SynthesisOrchestrator

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def build_services(
    app_settings: Settings,
    supabase_client: AsyncSupabaseClient | None,
    speech_provider=None,
) -> tuple[SynthesisOrchestrator, RetentionService]:
    """Wire repositories and adapters; in-memory stores stand in without Supabase."""
    if supabase_client is not None:
        subscriptions = SupabaseSubscriptionRepository(supabase_client, app_settings.tables)
        usage = SupabaseUsageRepository(supabase_client, app_settings.tables)
        jobs = SupabaseJobRepository(supabase_client, app_settings.tables)
        storage = SupabaseObjectStorage(supabase_client, app_settings.storage.bucket)
    else:
        subscriptions = InMemorySubscriptionRepository()
        usage = InMemoryUsageRepository()
        jobs = InMemoryJobRepository()
        storage = InMemoryObjectStorage(app_settings.storage.bucket)

    if speech_provider is None:
        speech_provider = OpenAISpeechProvider(
            get_openai_client(app_settings.openai_api_key), app_settings.synthesis
        )

    artifacts = ArtifactStore(storage, app_settings.storage)
    orchestrator = SynthesisOrchestrator(
        entitlements=EntitlementService(subscriptions),
        quota=QuotaLedger(usage, timezone=app_settings.quota.timezone),
        admission=ConcurrencyAdmissionController(
            jobs, default_limit=app_settings.quota.default_concurrency_limit
        ),
        synthesis=SynthesisAdapter(speech_provider, app_settings.synthesis),
        artifacts=artifacts,
        jobs=jobs,
        max_text_length=app_settings.quota.max_text_length,
    )
    retention = RetentionService(jobs, usage, artifacts, app_settings.retention)
    return orchestrator, retention


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    if not settings.openai_api_key:
        logger.warning("openai_key_missing", detail="Speech synthesis will not work")
    else:
        logger.info("openai_configured")

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning(
            "supabase_not_configured",
            detail="Auth endpoints will return 503; using in-memory stores",
        )

    _app.state.supabase = supabase_client

    orchestrator, retention = build_services(settings, supabase_client)
    _app.state.orchestrator = orchestrator
    _app.state.retention_service = retention
    _app.state.cleanup_state = CleanupState()

    if not settings.maintenance_token:
        logger.warning("maintenance_token_missing", detail="Maintenance endpoints disabled")

    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription-gated text-to-speech API. Converts text to audio, "
        "meters monthly character usage per plan and serves results "
        "through time-limited download links."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(tts_router, prefix="/api/v1")
app.include_router(usage_router, prefix="/api/v1")
app.include_router(maintenance_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Subscription-gated text-to-speech API",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
