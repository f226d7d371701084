# calsync/services/runtime.py
import os
from dataclasses import dataclass, field
from typing import AsyncContextManager, Callable, Dict

import httpx
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.infrastructure.redis_cache import Cache
from calsync.infrastructure.vault import SecretVault
from calsync.services.oauth_service import OAuthProvider, TokenManager

SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "900"))
SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "25"))
SYNC_CONCURRENCY = int(os.getenv("SYNC_CONCURRENCY", "5"))
SYNC_RATE_LIMIT_SECONDS = int(os.getenv("SYNC_RATE_LIMIT_SECONDS", "600"))
SYNC_CYCLE_BUDGET_SECONDS = int(os.getenv("SYNC_CYCLE_BUDGET_SECONDS", "120"))
MTM_API_FEED_URL = os.getenv("MTM_API_FEED_URL", "https://app.meettomatch.com/api/v1/me/meetings.ics")


@dataclass
class SyncRuntime:
    """
    Process-wide collaborators for the sync engine. Nothing in here is
    per-account mutable state; each unit of work opens its own session.
    """
    session_factory: Callable[[], AsyncContextManager[AsyncSession]]
    cache: Cache
    vault: SecretVault
    http_client: httpx.AsyncClient
    providers: Dict[str, OAuthProvider] = field(default_factory=dict)
    interval_seconds: int = SYNC_INTERVAL_SECONDS
    batch_size: int = SYNC_BATCH_SIZE
    concurrency: int = SYNC_CONCURRENCY
    rate_limit_seconds: int = SYNC_RATE_LIMIT_SECONDS
    cycle_budget_seconds: int = SYNC_CYCLE_BUDGET_SECONDS
    mtm_api_feed_url: str = MTM_API_FEED_URL

    def token_manager(self, session: AsyncSession) -> TokenManager:
        return TokenManager(session, self.cache, self.vault, self.http_client, self.providers)
