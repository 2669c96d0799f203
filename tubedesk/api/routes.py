from __future__ import annotations

from collections.abc import Callable
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException
from structlog.contextvars import bind_contextvars, reset_contextvars

from tubedesk.config import AppSettings
from tubedesk.dependencies import get_settings, get_sync_service
from tubedesk.models.sync_contracts import (
    ProgressSnapshot,
    QuotaStatusResponse,
    SyncStartRequest,
)
from tubedesk.services.sync_service import (
    CatalogSyncService,
    SyncAlreadyRunningError,
    SyncSessionNotFoundError,
)
from tubedesk.services.sync_types import SyncConfigurationError, SyncStateError

router = APIRouter(prefix="/sync", tags=["sync"])

UserIdHeader = Annotated[str, Header(alias="X-User-ID", min_length=1)]
SyncServiceDep = Annotated[CatalogSyncService, Depends(get_sync_service)]


def _run_sync_action(
    user_id: str,
    action: str,
    operation: Callable[[str], ProgressSnapshot],
) -> ProgressSnapshot:
    context_tokens = bind_contextvars(sync_user_id=user_id, sync_action=action)
    try:
        return operation(user_id)
    except SyncConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SyncSessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (SyncAlreadyRunningError, SyncStateError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    finally:
        reset_contextvars(**context_tokens)


@router.post("/start", response_model=ProgressSnapshot, status_code=202, operation_id="sync_start")
async def sync_start(
    request: SyncStartRequest,
    user_id: UserIdHeader,
    service: SyncServiceDep,
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> ProgressSnapshot:
    config = request.to_configuration(
        default_full_empty_pages=settings.sync_full_max_empty_pages,
        default_deep_empty_pages=settings.sync_deep_max_empty_pages,
    )
    return _run_sync_action(user_id, "start", lambda uid: service.start(uid, config))


@router.post("/pause", response_model=ProgressSnapshot, operation_id="sync_pause")
async def sync_pause(user_id: UserIdHeader, service: SyncServiceDep) -> ProgressSnapshot:
    return _run_sync_action(user_id, "pause", service.pause)


@router.post("/resume", response_model=ProgressSnapshot, operation_id="sync_resume")
async def sync_resume(user_id: UserIdHeader, service: SyncServiceDep) -> ProgressSnapshot:
    return _run_sync_action(user_id, "resume", service.resume)


@router.post("/stop", response_model=ProgressSnapshot, operation_id="sync_stop")
async def sync_stop(user_id: UserIdHeader, service: SyncServiceDep) -> ProgressSnapshot:
    return _run_sync_action(user_id, "stop", service.stop)


@router.get("/progress", response_model=ProgressSnapshot, operation_id="sync_progress")
async def sync_progress(user_id: UserIdHeader, service: SyncServiceDep) -> ProgressSnapshot:
    return _run_sync_action(user_id, "progress", service.snapshot)


@router.get("/quota", response_model=QuotaStatusResponse, operation_id="sync_quota")
def sync_quota(user_id: UserIdHeader, service: SyncServiceDep) -> QuotaStatusResponse:
    status = service.quota_status(user_id)
    return QuotaStatusResponse(
        date_utc=status.date_utc,
        requests_used=status.requests_used,
        daily_limit=status.daily_limit,
        remaining=status.remaining,
        percentage_used=status.percentage_used,
        warning=status.warning,
        exceeded=status.exceeded,
        reset_at=status.reset_at,
    )
