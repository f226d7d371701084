# calsync/services/integration_service.py
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import urlsplit, urlunsplit

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.errors import NotConnected, ValidationError
from calsync.infrastructure.accounts_repo import AccountsRepository
from calsync.infrastructure.feed_client import FeedClient
from calsync.infrastructure.meetings_repo import MeetingsRepository
from calsync.infrastructure.vault import hash_secret
from calsync.models.account import Account, PROVIDER_GOOGLE, PROVIDER_MTM, STATUS_CONNECTED, STATUS_DISCONNECTED
from calsync.models.meeting import Meeting
from calsync.services.mirror_service import DEFAULT_CALENDAR_ID
from calsync.services.runtime import SyncRuntime
from calsync.services.sync_service import SyncService

logger = structlog.get_logger(__name__)

MAX_URL_LENGTH = 2048
SECURE_SCHEMES = ("https", "webcal", "webcals")


def validate_feed_url(feed_url) -> str:
    """
    Returns the https form of an acceptable feed url or raises ValidationError
    with one of: invalid_url, insecure_scheme.
    """
    if not isinstance(feed_url, str) or not feed_url.strip():
        raise ValidationError("feed url is required", code="invalid_url")
    feed_url = feed_url.strip()
    if len(feed_url) > MAX_URL_LENGTH:
        raise ValidationError("feed url too long", code="invalid_url")

    parts = urlsplit(feed_url)
    scheme = parts.scheme.lower()
    if scheme == "http":
        raise ValidationError("feed url must use https", code="insecure_scheme")
    if scheme not in SECURE_SCHEMES:
        raise ValidationError("unsupported url scheme", code="invalid_url")
    try:
        hostname = parts.hostname
        parts.port  # raises on a malformed port
    except ValueError as e:
        raise ValidationError("malformed feed url", code="invalid_url") from e
    if not hostname or "." not in hostname:
        raise ValidationError("feed url has no host", code="invalid_url")
    if parts.username or parts.password:
        raise ValidationError("credentials in feed url are not allowed", code="invalid_url")
    # webcal:// is served over https
    return urlunsplit(("https", parts.netloc, parts.path or "/", parts.query, ""))


def meeting_to_dict(meeting: Meeting) -> dict:
    return {
        "id": meeting.external_id,
        "title": meeting.title,
        "description": meeting.description,
        "location": meeting.location,
        "start": meeting.start.isoformat() + "Z",
        "end": meeting.end.isoformat() + "Z",
        "tz": meeting.time_zone,
        "lat": meeting.lat,
        "lon": meeting.lon,
        "status": meeting.status,
        "participants": meeting.participants or [],
        "notes": meeting.notes,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class IntegrationService:
    """
    Backs the integration endpoints. `trigger(uid)` schedules a sync that
    the caller does not wait for.
    """

    def __init__(self, session: AsyncSession, runtime: SyncRuntime, trigger: Optional[Callable[[str], None]] = None):
        self.session = session
        self.runtime = runtime
        self.accounts = AccountsRepository(session)
        self.meetings = MeetingsRepository(session)
        self.trigger = trigger or (lambda uid: None)

    async def connect(self, uid: str, feed_url) -> Account:
        url = validate_feed_url(feed_url)
        problem = await FeedClient(self.runtime.http_client).probe(url)
        if problem:
            logger.info("mtm_connect_rejected", uid=uid, reason=problem, url_hash=hash_secret(url)[:12])
            raise ValidationError("feed url failed validation", code=problem)

        account = await self.accounts.get(uid, PROVIDER_MTM)
        if account is None:
            account = Account(uid=uid, provider=PROVIDER_MTM)
        account.encrypted_feed_url = self.runtime.vault.encrypt(url)
        account.feed_url_hash = hash_secret(url)
        account.connection_status = STATUS_CONNECTED
        account.last_error = None
        account.consecutive_errors = 0
        account.backoff_until = None
        account = await self.accounts.save(account)
        logger.info("mtm_connected", uid=uid, url_hash=account.feed_url_hash[:12])

        self.trigger(uid)
        return account

    async def disconnect(self, uid: str, purge: bool = False) -> None:
        account = await self.accounts.get(uid, PROVIDER_MTM)
        if account is not None:
            if account.uses_oauth:
                await self.runtime.token_manager(self.session).revoke(account)
            await self.accounts.delete(account)

        if purge:
            affected = await self.meetings.purge(uid, PROVIDER_MTM)
        else:
            affected = await self.meetings.cancel_all(uid, PROVIDER_MTM, datetime.utcnow())
        logger.info("mtm_disconnected", uid=uid, purge=purge, meetings_affected=affected)

    async def disconnect_google(self, uid: str) -> None:
        google = await self.accounts.get(uid, PROVIDER_GOOGLE)
        if google is None:
            raise NotConnected("no google calendar connection found")
        await self.runtime.token_manager(self.session).revoke(google)
        await self.accounts.delete(google)

        # mirroring has nowhere to write without a google account
        account = await self.accounts.get(uid, PROVIDER_MTM)
        if account is not None and account.mirror_enabled:
            account.mirror_enabled = False
            await self.accounts.save(account)
        logger.info("google_disconnected", uid=uid)

    async def status(self, uid: str) -> dict:
        account = await self.accounts.get(uid, PROVIDER_MTM)
        google = await self.accounts.get(uid, PROVIDER_GOOGLE)
        google_connected = bool(google and google.connection_status == STATUS_CONNECTED)
        if account is None:
            return {
                "connected": False,
                "status": STATUS_DISCONNECTED,
                "lastSyncAt": None,
                "lastError": None,
                "eventCount": 0,
                "mirrorEnabled": False,
                "mirrorCalendarId": None,
                "googleConnected": google_connected,
            }
        return {
            "connected": account.connection_status == STATUS_CONNECTED,
            "status": account.connection_status,
            "lastSyncAt": _iso(account.last_sync_at),
            "lastError": account.last_error,
            "eventCount": await self.meetings.count_active(uid, PROVIDER_MTM),
            "mirrorEnabled": account.mirror_enabled,
            "mirrorCalendarId": account.mirror_calendar_id,
            "googleConnected": google_connected,
        }

    async def events(self, uid: str) -> List[dict]:
        return [meeting_to_dict(m) for m in await self.meetings.list_active(uid, PROVIDER_MTM)]

    async def sync_now(self, uid: str) -> int:
        account = await self.accounts.get(uid, PROVIDER_MTM)
        if account is None:
            raise NotConnected("no mtm integration found")
        outcome = await SyncService(self.runtime).sync_now(uid, PROVIDER_MTM)
        return outcome.event_count

    async def toggle_mirror(self, uid: str, enabled: bool, calendar_id: Optional[str] = None) -> Account:
        account = await self.accounts.get(uid, PROVIDER_MTM)
        if account is None:
            raise NotConnected("no mtm integration found")
        if enabled:
            google = await self.accounts.get(uid, PROVIDER_GOOGLE)
            if google is None or google.connection_status != STATUS_CONNECTED:
                raise ValidationError("connect google calendar first", code="google_not_connected")
            account.mirror_calendar_id = (calendar_id or "").strip() or DEFAULT_CALENDAR_ID
        account.mirror_enabled = bool(enabled)
        account = await self.accounts.save(account)
        logger.info("mirror_toggled", uid=uid, enabled=account.mirror_enabled, calendar_id=account.mirror_calendar_id)

        if account.mirror_enabled:
            self.trigger(uid)
        return account
