"""Usage statistics endpoint."""

from fastapi import APIRouter, HTTPException, Query, Request

from ttsgate.auth import CurrentUser
from ttsgate.models.usage import UsageStats
from ttsgate.services.synthesis_orchestrator import SynthesisOrchestrator

router = APIRouter(tags=["usage"])


def _get_orchestrator(request: Request) -> SynthesisOrchestrator:
    service = getattr(request.app.state, "orchestrator", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Usage service unavailable")
    return service


@router.get("/usage", response_model=UsageStats)
async def get_usage(
    request: Request,
    user: CurrentUser,
    year: int | None = Query(default=None, ge=2000, le=9999),
    month: int | None = Query(default=None, ge=1, le=12),
) -> UsageStats:
    """Character usage for a month (defaults to the current period)."""
    orchestrator = _get_orchestrator(request)
    return await orchestrator.get_usage(user.id, year=year, month=month)
