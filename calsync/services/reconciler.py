# calsync/services/reconciler.py
"""
Diff-and-merge of a freshly fetched meeting set against stored state.

Only ever called with the result of a *successful* fetch and parse; a failed
fetch must not reach this module, otherwise every stored meeting would look
like it disappeared upstream.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.infrastructure.meetings_repo import MeetingsRepository
from calsync.models.meeting import FEED_FIELDS, MEETING_CANCELED, Meeting
from calsync.services.feed_parser import ParsedMeeting

logger = structlog.get_logger(__name__)


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    canceled: int = 0
    unchanged: int = 0
    changed: List[Meeting] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return self.created + self.updated + self.canceled


def merge_fields(meeting: Meeting, parsed: ParsedMeeting) -> bool:
    """
    Copy feed-owned fields onto the stored row. Local fields (notes,
    mirror_ref, mirror_pending) are left alone. Returns True when anything differed.
    """
    changed = False
    for name in FEED_FIELDS:
        incoming = getattr(parsed, name)
        if getattr(meeting, name) != incoming:
            setattr(meeting, name, list(incoming) if isinstance(incoming, list) else incoming)
            changed = True
    return changed


class MeetingReconciler:
    def __init__(self, session: AsyncSession):
        self.repo = MeetingsRepository(session)

    async def reconcile(
        self,
        uid: str,
        provider: str,
        fetched: Iterable[ParsedMeeting],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        now = now or datetime.utcnow()
        stored = await self.repo.map_by_external_id(uid, provider)
        result = ReconcileResult()
        seen = set()

        for parsed in fetched:
            if parsed.external_id in seen:
                continue
            seen.add(parsed.external_id)
            existing = stored.get(parsed.external_id)
            if existing is None:
                meeting = Meeting(
                    owner_uid=uid,
                    provider=provider,
                    external_id=parsed.external_id,
                    start=parsed.start,
                    end=parsed.end,
                )
                merge_fields(meeting, parsed)
                meeting.last_seen_at = now
                meeting.created_at = now
                meeting.updated_at = now
                meeting.mirror_pending = True
                result.created += 1
                result.changed.append(meeting)
            elif merge_fields(existing, parsed):
                existing.last_seen_at = now
                existing.updated_at = now
                existing.mirror_pending = True
                result.updated += 1
                result.changed.append(existing)
            else:
                result.unchanged += 1

        for external_id, meeting in stored.items():
            if external_id in seen or meeting.status == MEETING_CANCELED:
                continue
            meeting.status = MEETING_CANCELED
            meeting.updated_at = now
            meeting.mirror_pending = True
            result.canceled += 1
            result.changed.append(meeting)

        if result.changed:
            self.repo.stage(result.changed)
            await self.repo.commit()

        logger.info(
            "meetings_reconciled",
            uid=uid,
            provider=provider,
            created=result.created,
            updated=result.updated,
            canceled=result.canceled,
            unchanged=result.unchanged,
        )
        return result
