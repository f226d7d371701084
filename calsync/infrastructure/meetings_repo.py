# calsync/infrastructure/meetings_repo.py
from typing import Dict, Iterable, List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select, func
from sqlalchemy import and_, or_, delete as sa_delete
from calsync.models.meeting import Meeting, MEETING_CANCELED
from datetime import datetime


class MeetingsRepository:
    """
    Repository for Meeting records, keyed by (owner_uid, provider, external_id).
    Writes are staged on the session and committed in one go by `commit`,
    so a reconcile pass lands as a single batch.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def map_by_external_id(self, uid: str, provider: str) -> Dict[str, Meeting]:
        q = select(Meeting).where(Meeting.owner_uid == uid, Meeting.provider == provider)
        res = await self.session.execute(q)
        return {m.external_id: m for m in res.scalars().all()}

    async def list_active(self, uid: str, provider: str) -> List[Meeting]:
        q = (
            select(Meeting)
            .where(
                Meeting.owner_uid == uid,
                Meeting.provider == provider,
                Meeting.status != MEETING_CANCELED,
            )
            .order_by(Meeting.start)
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def count_active(self, uid: str, provider: str) -> int:
        q = select(func.count()).select_from(Meeting).where(
            Meeting.owner_uid == uid,
            Meeting.provider == provider,
            Meeting.status != MEETING_CANCELED,
        )
        res = await self.session.execute(q)
        return int(res.scalar_one())

    async def list_mirror_backlog(self, uid: str, provider: str) -> List[Meeting]:
        """Meetings whose Google copy is behind: pending writes, or active and never mirrored."""
        q = (
            select(Meeting)
            .where(
                Meeting.owner_uid == uid,
                Meeting.provider == provider,
                or_(
                    Meeting.mirror_pending.is_(True),
                    and_(Meeting.status != MEETING_CANCELED, Meeting.mirror_ref.is_(None)),
                ),
            )
            .order_by(Meeting.start)
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    def stage(self, meetings: Iterable[Meeting]) -> None:
        for m in meetings:
            self.session.add(m)

    async def commit(self) -> None:
        await self.session.commit()

    async def mark_mirrored(self, meeting: Meeting, mirror_ref: Optional[str] = None) -> bool:
        """Records a landed mirror write. Returns False (and writes nothing) when nothing changed."""
        ref = mirror_ref or meeting.mirror_ref
        if meeting.mirror_ref == ref and not meeting.mirror_pending:
            return False
        meeting.mirror_ref = ref
        meeting.mirror_pending = False
        self.session.add(meeting)
        await self.session.commit()
        return True

    async def mark_mirror_pending(self, meetings: Iterable[Meeting]) -> int:
        """Keeps these meetings in the mirror backlog for the next cycle."""
        marked = 0
        for m in meetings:
            if not m.mirror_pending:
                m.mirror_pending = True
                self.session.add(m)
                marked += 1
        if marked:
            await self.session.commit()
        return marked

    async def cancel_all(self, uid: str, provider: str, now: datetime) -> int:
        meetings = await self.map_by_external_id(uid, provider)
        changed = 0
        for m in meetings.values():
            if m.status != MEETING_CANCELED:
                m.status = MEETING_CANCELED
                m.updated_at = now
                m.mirror_pending = True
                self.session.add(m)
                changed += 1
        await self.session.commit()
        return changed

    async def purge(self, uid: str, provider: str) -> int:
        q = sa_delete(Meeting).where(Meeting.owner_uid == uid, Meeting.provider == provider)
        res = await self.session.execute(q)
        await self.session.commit()
        return res.rowcount or 0
