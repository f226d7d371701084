# calsync/routers/integration_router.py
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.dependencies.auth import get_current_user
from calsync.dependencies.db import get_session_dep
from calsync.dependencies.runtime import get_runtime
from calsync.schemas.integration_schema import ConnectRequest, DisconnectRequest, ToggleMirrorRequest
from calsync.services.integration_service import IntegrationService
from calsync.services.runtime import SyncRuntime
from calsync.services.sync_service import run_sync_safely
from calsync.UAA.schemas import CurrentUser

router = APIRouter(prefix="/api/integrations/mtm", tags=["mtm"])


def _service(session: AsyncSession, runtime: SyncRuntime, background_tasks: BackgroundTasks) -> IntegrationService:
    def trigger(uid: str) -> None:
        background_tasks.add_task(run_sync_safely, runtime, uid)

    return IntegrationService(session, runtime, trigger=trigger)


@router.post("/connect")
async def connect(
    payload: ConnectRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    await _service(session, runtime, background_tasks).connect(current_user.uid, payload.feed_url)
    return {"ok": True}


@router.post("/syncNow")
async def sync_now(
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    event_count = await _service(session, runtime, background_tasks).sync_now(current_user.uid)
    return {"ok": True, "eventCount": event_count}


@router.post("/disconnect")
async def disconnect(
    background_tasks: BackgroundTasks,
    payload: Optional[DisconnectRequest] = None,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    purge = payload.delete_events if payload else False
    await _service(session, runtime, background_tasks).disconnect(current_user.uid, purge=purge)
    return {"ok": True}


@router.get("/status")
async def status(
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    body = await _service(session, runtime, background_tasks).status(current_user.uid)
    return {"ok": True, **body}


@router.get("/events")
async def events(
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    return {"ok": True, "events": await _service(session, runtime, background_tasks).events(current_user.uid)}


@router.post("/toggleMirror")
async def toggle_mirror(
    payload: ToggleMirrorRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    account = await _service(session, runtime, background_tasks).toggle_mirror(
        current_user.uid, payload.mirror_enabled, payload.calendar_id
    )
    return {"ok": True, "mirrorEnabled": account.mirror_enabled, "mirrorCalendarId": account.mirror_calendar_id}
