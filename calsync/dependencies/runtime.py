from fastapi import HTTPException, Request, status

from calsync.services.runtime import SyncRuntime


def get_runtime(request: Request) -> SyncRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="service_starting")
    return runtime
