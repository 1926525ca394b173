"""Retention and account teardown endpoints, guarded by a shared token."""

import secrets

import structlog
from fastapi import APIRouter, Header, HTTPException, Request

from ttsgate.config import get_settings
from ttsgate.services.retention_service import (
    CleanupKind,
    CleanupState,
    CleanupSummary,
    PurgeResult,
    RetentionService,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


def _require_token(token: str | None) -> None:
    expected = get_settings().maintenance_token
    if not expected:
        raise HTTPException(status_code=503, detail="Maintenance endpoints are disabled")
    if not token or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid maintenance token")


def _get_retention(request: Request) -> tuple[RetentionService, CleanupState]:
    service = getattr(request.app.state, "retention_service", None)
    state = getattr(request.app.state, "cleanup_state", None)
    if service is None or state is None:
        raise HTTPException(status_code=503, detail="Retention service unavailable")
    return service, state


@router.post("/cleanup", response_model=CleanupSummary)
async def run_cleanup(
    request: Request,
    kind: CleanupKind = CleanupKind.ALL,
    x_maintenance_token: str | None = Header(default=None),
) -> CleanupSummary:
    """Run a retention cleanup pass."""
    _require_token(x_maintenance_token)
    service, state = _get_retention(request)
    logger.info("manual_cleanup_requested", kind=kind.value)
    return await service.manual_cleanup(kind, state)


@router.delete("/users/{user_id}", response_model=PurgeResult)
async def purge_user(
    user_id: str,
    request: Request,
    x_maintenance_token: str | None = Header(default=None),
) -> PurgeResult:
    """Delete all synthesis data belonging to a user."""
    _require_token(x_maintenance_token)
    service, _ = _get_retention(request)
    return await service.purge_user_data(user_id)
