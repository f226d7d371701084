# calsync/services/sync_service.py
"""
One account's sync cycle: token -> fetch -> parse -> reconcile -> mirror.

Every step is idempotent, so a cycle abandoned halfway (timeout, crash) is
simply redone by the next run; nothing is rolled back.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.errors import (
    DecryptionError,
    FeedError,
    IntegrationError,
    NotConnected,
    ProviderError,
    RateLimited,
    ReauthRequired,
)
from calsync.infrastructure.accounts_repo import AccountsRepository
from calsync.infrastructure.feed_client import FeedClient
from calsync.infrastructure.meetings_repo import MeetingsRepository
from calsync.models.account import (
    Account,
    PROVIDER_GOOGLE,
    PROVIDER_MTM,
    STATUS_CONNECTED,
    STATUS_ERROR,
)
from calsync.services.feed_parser import parse_feed
from calsync.services.mirror_service import MirrorResult, MirrorWriter, select_candidates
from calsync.services.oauth_service import TokenManager
from calsync.services.reconciler import MeetingReconciler, ReconcileResult
from calsync.services.runtime import SyncRuntime

logger = structlog.get_logger(__name__)

MAX_BACKOFF = timedelta(hours=6)
GOOGLE_NOT_CONNECTED = "google_not_connected"


@dataclass
class SyncOutcome:
    uid: str
    provider: str
    event_count: int
    reconcile: ReconcileResult
    mirror: Optional[MirrorResult] = None


def lock_key(uid: str, provider: str) -> str:
    return f"sync:lock:{provider}:{uid}"


def recent_key(uid: str, provider: str) -> str:
    return f"sync:recent:{provider}:{uid}"


def backoff_until(consecutive_errors: int, now: datetime, interval_seconds: int) -> datetime:
    """Exponential backoff in units of the scheduler interval, capped at six hours."""
    exponent = max(0, consecutive_errors - 1)
    delay = timedelta(seconds=interval_seconds * (2 ** min(exponent, 16)))
    return now + min(delay, MAX_BACKOFF)


class SyncService:
    def __init__(self, runtime: SyncRuntime):
        self.runtime = runtime

    async def sync_now(self, uid: str, provider: str = PROVIDER_MTM) -> SyncOutcome:
        """
        Manual trigger. Rejected outright (no fetch) when any cycle for this
        account started inside the rate-limit window.
        """
        cache = self.runtime.cache
        key = recent_key(uid, provider)
        if not await cache.add(key, datetime.utcnow().isoformat(), ttl=self.runtime.rate_limit_seconds):
            retry_after = await cache.ttl(key)
            logger.info("sync_now_rate_limited", uid=uid, provider=provider, retry_after=retry_after)
            raise RateLimited("sync requested too recently", retry_after=retry_after)
        return await self.sync_account(uid, provider)

    async def sync_account(self, uid: str, provider: str = PROVIDER_MTM, now: Optional[datetime] = None) -> SyncOutcome:
        cache = self.runtime.cache
        lock = lock_key(uid, provider)
        if not await cache.add(lock, "1", ttl=self.runtime.cycle_budget_seconds + 60):
            logger.info("sync_skipped_in_flight", uid=uid, provider=provider)
            raise RateLimited("sync already in progress")
        try:
            await cache.set(recent_key(uid, provider), "1", ttl=self.runtime.rate_limit_seconds)
            async with self.runtime.session_factory() as session:
                return await self._run_cycle(session, uid, provider, now or datetime.utcnow())
        finally:
            await cache.delete(lock)

    async def _run_cycle(self, session: AsyncSession, uid: str, provider: str, now: datetime) -> SyncOutcome:
        accounts = AccountsRepository(session)
        account = await accounts.get(uid, provider)
        if account is None or account.connection_status != STATUS_CONNECTED:
            raise NotConnected(f"no connected {provider} account")

        tokens = self.runtime.token_manager(session)
        log = logger.bind(uid=uid, provider=provider)
        try:
            url, access_token = await self._feed_source(account, tokens)
            feed_text = await FeedClient(self.runtime.http_client).fetch(url, access_token)
            parsed = parse_feed(feed_text)
        except (ReauthRequired, DecryptionError) as e:
            # the token manager may already have parked the account as expired/error
            status = STATUS_ERROR if account.connection_status == STATUS_CONNECTED else None
            await accounts.record_sync_failure(account, e.code, None, status=status)
            log.warning("sync_reauth_required", error=e.code)
            raise
        except RateLimited as e:
            retry = timedelta(seconds=e.retry_after) if e.retry_after else timedelta(seconds=self.runtime.interval_seconds)
            await accounts.record_sync_failure(account, e.code, now + retry)
            log.warning("sync_rate_limited", retry_after=e.retry_after)
            raise
        except (FeedError, ProviderError) as e:
            until = backoff_until((account.consecutive_errors or 0) + 1, now, self.runtime.interval_seconds)
            await accounts.record_sync_failure(account, e.code, until)
            log.warning("sync_fetch_failed", error=e.code, detail=str(e), backoff_until=until.isoformat())
            raise

        result = await MeetingReconciler(session).reconcile(uid, provider, parsed, now)
        await accounts.record_sync_success(account, now)

        mirror_result = None
        if account.mirror_enabled:
            mirror_result = await self._mirror(session, account, result, tokens, now)

        event_count = await MeetingsRepository(session).count_active(uid, provider)
        log.info(
            "sync_completed",
            fetched=len(parsed),
            writes=result.writes,
            event_count=event_count,
            mirrored=mirror_result.writes if mirror_result else None,
        )
        return SyncOutcome(uid, provider, event_count, result, mirror_result)

    async def _feed_source(self, account: Account, tokens: TokenManager) -> Tuple[str, Optional[str]]:
        # secret feed urls carry their own capability; bearer tokens only go to the provider's api
        if account.encrypted_feed_url:
            return self.runtime.vault.decrypt(account.encrypted_feed_url), None
        if account.uses_oauth:
            return self.runtime.mtm_api_feed_url, await tokens.get_valid_access_token(account)
        raise NotConnected("account has neither a feed url nor oauth tokens")

    async def _mirror(
        self,
        session: AsyncSession,
        account: Account,
        result: ReconcileResult,
        tokens: TokenManager,
        now: datetime,
    ) -> Optional[MirrorResult]:
        accounts = AccountsRepository(session)
        google = await accounts.get(account.uid, PROVIDER_GOOGLE)
        if google is None or google.connection_status != STATUS_CONNECTED:
            account.last_error = GOOGLE_NOT_CONNECTED
            await accounts.save(account)
            logger.warning("mirror_skipped_google_not_connected", uid=account.uid)
            return None

        backlog = await MeetingsRepository(session).list_mirror_backlog(account.uid, account.provider)
        candidates = select_candidates(result.changed, backlog)
        writer = MirrorWriter(session, tokens, self.runtime.http_client)
        mirror_result = await writer.mirror(google, candidates, account.mirror_calendar_id)

        if mirror_result.aborted:
            account.last_error = mirror_result.abort_reason
            if mirror_result.retry_after:
                account.backoff_until = now + timedelta(seconds=mirror_result.retry_after)
            await accounts.save(account)
        return mirror_result


async def run_sync_safely(runtime: SyncRuntime, uid: str, provider: str = PROVIDER_MTM) -> Optional[SyncOutcome]:
    """Background entry point: failures are already recorded on the account, so only log."""
    try:
        return await SyncService(runtime).sync_account(uid, provider)
    except IntegrationError as e:
        logger.info("background_sync_failed", uid=uid, provider=provider, error=e.code)
    except Exception as e:
        logger.exception("background_sync_crashed", uid=uid, provider=provider, error=str(e))
    return None
