from typing import AsyncGenerator

from fastapi import Depends

from calsync.dependencies.runtime import get_runtime
from calsync.services.runtime import SyncRuntime


async def get_session_dep(runtime: SyncRuntime = Depends(get_runtime)) -> AsyncGenerator:
    async with runtime.session_factory() as session:
        yield session
