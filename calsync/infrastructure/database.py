import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# register tables on the shared metadata
from calsync.models.account import Account  # noqa: F401
from calsync.models.meeting import Meeting  # noqa: F401

logger = structlog.get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./calsync.db")

engine: AsyncEngine = create_async_engine(DATABASE_URL, echo=False)


async def init_db(bind: AsyncEngine = engine) -> None:
    try:
        async with bind.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)
    except Exception as e:
        logger.exception("db_init_failed", error=str(e))
        raise


def session_factory(bind: AsyncEngine):
    """Returns a callable opening a fresh AsyncSession per unit of work."""

    @asynccontextmanager
    async def _open() -> AsyncIterator[AsyncSession]:
        async with AsyncSession(bind, expire_on_commit=False) as session:
            yield session

    return _open


get_session = session_factory(engine)
