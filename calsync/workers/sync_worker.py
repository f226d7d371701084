"""Scheduled driver for the sync orchestrator."""

import asyncio
from typing import Optional

import structlog

from calsync.services.orchestrator import SyncOrchestrator
from calsync.services.runtime import SyncRuntime

logger = structlog.get_logger(__name__)


class SyncWorker:
    """Runs one orchestrator batch every `interval_seconds` until stopped."""

    def __init__(self, runtime: SyncRuntime, interval_seconds: Optional[int] = None):
        self.orchestrator = SyncOrchestrator(runtime)
        self.interval = interval_seconds or runtime.interval_seconds
        self.running = False
        self._stopped = asyncio.Event()

    async def run(self):
        self.running = True
        self._stopped.clear()
        logger.info("sync_worker_started", interval_seconds=self.interval)

        while self.running:
            try:
                await self.orchestrator.run_once()
            except Exception as e:
                logger.exception("sync_worker_batch_failed", error=str(e))

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("sync_worker_stopped")

    def stop(self):
        self.running = False
        self._stopped.set()


async def main():
    from calsync.main import build_runtime, configure_structlog
    from calsync.infrastructure.database import init_db

    configure_structlog()
    await init_db()
    runtime = build_runtime()
    worker = SyncWorker(runtime)
    try:
        await worker.run()
    finally:
        await runtime.http_client.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("sync_worker_interrupted")
