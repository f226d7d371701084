# calsync/routers/oauth_router.py
from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.dependencies.auth import get_current_user
from calsync.dependencies.db import get_session_dep
from calsync.dependencies.runtime import get_runtime
from calsync.errors import ValidationError
from calsync.models.account import PROVIDER_GOOGLE, PROVIDER_MTM
from calsync.services.integration_service import IntegrationService
from calsync.services.runtime import SyncRuntime
from calsync.services.sync_service import run_sync_safely
from calsync.UAA.schemas import CurrentUser

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    auth_url, _ = await runtime.token_manager(session).begin_authorization(current_user.uid, provider)
    return {"ok": True, "authUrl": auth_url}


@router.get("/{provider}/callback")
async def callback(
    provider: str,
    background_tasks: BackgroundTasks,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
):
    tokens = runtime.token_manager(session)
    if error:
        # the user declined at the provider; burn the session so the state cannot be reused
        if state:
            await tokens.consume_session(state)
        raise ValidationError(f"authorization denied: {error}", code="access_denied")

    account = await tokens.complete_authorization(state, code, provider_name=provider)
    if account.provider == PROVIDER_MTM:
        background_tasks.add_task(run_sync_safely, runtime, account.uid)
    return {"ok": True, "provider": account.provider, "status": account.connection_status}


@router.post("/{provider}/revoke")
async def revoke(
    provider: str,
    session: AsyncSession = Depends(get_session_dep),
    runtime: SyncRuntime = Depends(get_runtime),
    current_user: CurrentUser = Depends(get_current_user),
):
    service = IntegrationService(session, runtime)
    if provider == PROVIDER_GOOGLE:
        await service.disconnect_google(current_user.uid)
    elif provider == PROVIDER_MTM:
        await service.disconnect(current_user.uid)
    else:
        raise ValidationError(f"unknown provider {provider}", code="unknown_provider")
    return {"ok": True}
