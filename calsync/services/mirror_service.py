# calsync/services/mirror_service.py
"""
One-way projection of stored meetings into the user's Google Calendar.

Duplicate protection does not rely on local state: every write is preceded by
a server-side lookup on the private `mtmUid` property, and creates use an id
derived from the meeting key, so a retried insert collides with itself
instead of producing a second event.
"""
import hashlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import httpx
import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.errors import IntegrationError, MirrorAuthError, RateLimited, ReauthRequired
from calsync.infrastructure.google_calendar_client import (
    EXTERNAL_ID_PROPERTY,
    EventAlreadyExists,
    GoogleCalendarClient,
    GoogleCalendarError,
)
from calsync.infrastructure.meetings_repo import MeetingsRepository
from calsync.models.account import Account
from calsync.models.meeting import MEETING_CANCELED, MEETING_DECLINED, MEETING_PENDING, Meeting
from calsync.services.feed_parser import is_iana_zone
from calsync.services.oauth_service import TokenManager

logger = structlog.get_logger(__name__)

DEFAULT_CALENDAR_ID = "primary"
DEFAULT_MIRROR_TZ = "Europe/Berlin"
SUMMARY_PREFIX = "[MTM] "


@dataclass
class MirrorResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def writes(self) -> int:
        return self.created + self.updated


def mirror_event_id(meeting: Meeting) -> str:
    """
    Deterministic Google event id. Hex digits are a subset of the base32hex
    alphabet Calendar accepts for client-supplied ids.
    """
    key = f"{meeting.owner_uid}:{meeting.provider}:{meeting.external_id}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _google_status(meeting: Meeting) -> str:
    if meeting.status == MEETING_CANCELED:
        return "cancelled"
    if meeting.status in (MEETING_PENDING, MEETING_DECLINED):
        return "tentative"
    return "confirmed"


def build_event_body(meeting: Meeting) -> dict:
    tz = meeting.time_zone if is_iana_zone(meeting.time_zone) else DEFAULT_MIRROR_TZ
    return {
        "summary": f"{SUMMARY_PREFIX}{meeting.title}",
        "description": meeting.description,
        "location": meeting.location,
        "start": {"dateTime": meeting.start.isoformat() + "Z", "timeZone": tz},
        "end": {"dateTime": meeting.end.isoformat() + "Z", "timeZone": tz},
        "status": _google_status(meeting),
        "extendedProperties": {
            "private": {
                EXTERNAL_ID_PROPERTY: meeting.external_id,
                "source": meeting.provider,
                "ownerUid": meeting.owner_uid,
            }
        },
    }


def select_candidates(changed: Iterable[Meeting], backlog: Iterable[Meeting]) -> List[Meeting]:
    """
    Meetings touched this cycle, plus stored ones whose Google copy is behind:
    a write that never landed (active or canceled), or an active meeting
    never mirrored at all.
    """
    picked: Dict[str, Meeting] = {}
    for m in changed:
        picked[m.external_id] = m
    for m in backlog:
        if m.external_id in picked:
            continue
        if m.mirror_pending or (m.is_active and m.mirror_ref is None):
            picked[m.external_id] = m
    return list(picked.values())


class MirrorWriter:
    def __init__(self, session: AsyncSession, token_manager: TokenManager, http_client: httpx.AsyncClient):
        self.meetings = MeetingsRepository(session)
        self.token_manager = token_manager
        self.http_client = http_client

    async def mirror(
        self,
        google_account: Account,
        meetings: List[Meeting],
        calendar_id: Optional[str] = None,
    ) -> MirrorResult:
        result = MirrorResult()
        if not meetings:
            return result
        calendar_id = calendar_id or DEFAULT_CALENDAR_ID

        try:
            access_token = await self.token_manager.get_valid_access_token(google_account)
        except ReauthRequired:
            result.aborted, result.abort_reason = True, MirrorAuthError.code
            logger.warning("mirror_skipped_reauth_required", uid=google_account.uid)
        except RateLimited as e:
            result.aborted, result.abort_reason, result.retry_after = True, RateLimited.code, e.retry_after
            logger.warning("mirror_skipped_token_rate_limited", uid=google_account.uid, retry_after=e.retry_after)
        except IntegrationError as e:
            result.aborted, result.abort_reason = True, f"mirror_{e.code}"
            logger.warning("mirror_skipped_token_unavailable", uid=google_account.uid, error=e.code, detail=str(e))
        if result.aborted:
            await self.meetings.mark_mirror_pending(meetings)
            return result

        client = GoogleCalendarClient(access_token, self.http_client)
        for index, meeting in enumerate(meetings):
            try:
                await self._mirror_one(client, calendar_id, meeting, result)
            except MirrorAuthError:
                # known-dead token: stop here, the rest is picked up next cycle
                result.aborted, result.abort_reason = True, MirrorAuthError.code
                logger.warning("mirror_aborted_auth", uid=meeting.owner_uid, remaining=len(meetings) - index)
                await self.meetings.mark_mirror_pending(meetings[index:])
                break
            except RateLimited as e:
                result.aborted, result.abort_reason, result.retry_after = True, RateLimited.code, e.retry_after
                logger.warning("mirror_aborted_rate_limited", uid=meeting.owner_uid, remaining=len(meetings) - index, retry_after=e.retry_after)
                await self.meetings.mark_mirror_pending(meetings[index:])
                break
            except GoogleCalendarError as e:
                result.failed += 1
                logger.warning("mirror_event_failed", uid=meeting.owner_uid, external_id=meeting.external_id, status=e.status_code, error=str(e))
                await self.meetings.mark_mirror_pending([meeting])

        logger.info(
            "mirror_completed",
            uid=google_account.uid,
            calendar_id=calendar_id,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            failed=result.failed,
            aborted=result.aborted,
        )
        return result

    async def _mirror_one(self, client: GoogleCalendarClient, calendar_id: str, meeting: Meeting, result: MirrorResult) -> None:
        body = build_event_body(meeting)
        existing = await client.find_by_external_id(calendar_id, meeting.external_id)
        if existing:
            await client.patch_event(calendar_id, existing["id"], body)
            result.updated += 1
            await self.meetings.mark_mirrored(meeting, existing["id"])
            return

        if not meeting.is_active:
            # nothing live on the calendar to cancel
            result.skipped += 1
            await self.meetings.mark_mirrored(meeting)
            return

        event_id = mirror_event_id(meeting)
        try:
            created = await client.insert_event(calendar_id, {**body, "id": event_id})
            result.created += 1
            event_id = created.get("id", event_id)
        except EventAlreadyExists:
            # an earlier attempt landed (or the event sits cancelled/hidden); bring it up to date
            logger.info("mirror_insert_already_exists", uid=meeting.owner_uid, external_id=meeting.external_id)
            await client.patch_event(calendar_id, event_id, body)
            result.updated += 1
        await self.meetings.mark_mirrored(meeting, event_id)
