"""Text-to-speech API endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from ttsgate.api.v1.errors import to_http_exception
from ttsgate.auth import CurrentUser
from ttsgate.errors import SynthesisPipelineError
from ttsgate.models.job import (
    ConversionRequest,
    ConversionResult,
    DownloadLink,
    JobPage,
    JobStatus,
    VoiceInfo,
)
from ttsgate.services.speech_provider import SynthesisAdapter
from ttsgate.services.synthesis_orchestrator import SynthesisOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/tts", tags=["tts"])


class VoiceList(BaseModel):
    voices: list[VoiceInfo]
    count: int


class PreviewRequest(BaseModel):
    voice_id: str = Field(description="Voice to preview")
    text: str | None = Field(default=None, description="Optional sample text (truncated)")


def _get_orchestrator(request: Request) -> SynthesisOrchestrator:
    service = getattr(request.app.state, "orchestrator", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Text-to-speech service unavailable")
    return service


def _get_synthesis(request: Request) -> SynthesisAdapter:
    return _get_orchestrator(request).synthesis


@router.get("/voices", response_model=VoiceList)
async def list_voices(
    request: Request,
    engine: str | None = None,
    language_code: str | None = None,
) -> VoiceList:
    """Available voices, optionally filtered by engine."""
    synthesis = _get_synthesis(request)
    try:
        voices = await synthesis.list_voices(language_code=language_code, engine=engine)
    except SynthesisPipelineError as e:
        raise to_http_exception(e)
    return VoiceList(voices=voices, count=len(voices))


@router.post("/preview")
async def preview_voice(body: PreviewRequest, request: Request) -> Response:
    """Short mp3 sample of a voice. Not metered."""
    synthesis = _get_synthesis(request)
    try:
        result = await synthesis.preview(body.voice_id, body.text)
    except SynthesisPipelineError as e:
        raise to_http_exception(e)
    return Response(
        content=result.audio_bytes,
        media_type=result.content_type,
        headers={"Content-Disposition": f'inline; filename="preview_{body.voice_id}.mp3"'},
    )


@router.post("/convert", response_model=ConversionResult)
async def convert_text(
    body: ConversionRequest,
    request: Request,
    user: CurrentUser,
) -> ConversionResult:
    """Convert text to speech for the authenticated user."""
    orchestrator = _get_orchestrator(request)
    try:
        return await orchestrator.convert(user.id, body)
    except SynthesisPipelineError as e:
        logger.info("convert_rejected", code=e.kind.value, user_id=user.id)
        raise to_http_exception(e)


@router.get("/download/{job_id}", response_model=DownloadLink)
async def download_link(job_id: str, request: Request, user: CurrentUser) -> DownloadLink:
    """Fresh signed download URL for a completed job."""
    orchestrator = _get_orchestrator(request)
    try:
        return await orchestrator.get_download_link(user.id, job_id)
    except SynthesisPipelineError as e:
        raise to_http_exception(e)


@router.get("/jobs", response_model=JobPage)
async def list_jobs(
    request: Request,
    user: CurrentUser,
    status: JobStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> JobPage:
    """The user's conversion history, newest first."""
    orchestrator = _get_orchestrator(request)
    return await orchestrator.list_jobs(user.id, status=status, page=page, limit=limit)


@router.delete("/jobs/{job_id}", status_code=204)
async def delete_job(job_id: str, request: Request, user: CurrentUser) -> Response:
    orchestrator = _get_orchestrator(request)
    try:
        await orchestrator.delete_job(user.id, job_id)
    except SynthesisPipelineError as e:
        raise to_http_exception(e)
    return Response(status_code=204)
