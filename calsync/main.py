# calsync/main.py
import asyncio
import os
import uvicorn
import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from calsync.routers.integration_router import router as integration_router
from calsync.routers.oauth_router import router as oauth_router
from calsync.infrastructure.database import get_session, init_db
from calsync.infrastructure.redis_cache import redis_cache_from_env
from calsync.infrastructure.vault import vault_from_env
from calsync.middleware.logging import RequestIdMiddleware
from calsync.errors import IntegrationError, RateLimited
from calsync.services.oauth_service import providers_from_env
from calsync.services.runtime import SyncRuntime
from calsync.workers.sync_worker import SyncWorker
import structlog

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "false").lower() in ("1", "true", "yes")

def configure_structlog():
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
    )

configure_structlog()
logger = structlog.get_logger()


def build_runtime() -> SyncRuntime:
    return SyncRuntime(
        session_factory=get_session,
        cache=redis_cache_from_env(),
        vault=vault_from_env(),
        http_client=httpx.AsyncClient(follow_redirects=True),
        providers=providers_from_env(),
    )


app = FastAPI(title="Conference Calendar Sync")

app.add_middleware(RequestIdMiddleware)

app.include_router(integration_router)
app.include_router(oauth_router)


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError):
    if exc.status_code >= 500:
        logger.warning("request_failed", error=exc.code, detail=str(exc))
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse({"ok": False, "error": exc.code}, status_code=exc.status_code, headers=headers)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse({"ok": False, "error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"ok": False, "error": "invalid_request"}, status_code=400)


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.on_event("startup")
async def on_startup():
    await init_db()
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime()
    app.state.worker = None
    app.state.worker_task = None
    if SCHEDULER_ENABLED:
        app.state.worker = SyncWorker(app.state.runtime)
        app.state.worker_task = asyncio.create_task(app.state.worker.run())
    logger.info("app_startup", scheduler_enabled=SCHEDULER_ENABLED)


@app.on_event("shutdown")
async def on_shutdown():
    worker = getattr(app.state, "worker", None)
    if worker is not None:
        worker.stop()
        await app.state.worker_task
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.http_client.aclose()
        close = getattr(runtime.cache, "close", None)
        if close is not None:
            await close()
    logger.info("app_shutdown")

if __name__ == "__main__":
    uvicorn.run("calsync.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)), reload=True)
