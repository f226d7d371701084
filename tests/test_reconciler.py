from datetime import datetime, timedelta

import pytest

from calsync.infrastructure.meetings_repo import MeetingsRepository
from calsync.models.meeting import MEETING_CANCELED, MEETING_CONFIRMED
from calsync.services.feed_parser import ParsedMeeting
from calsync.services.reconciler import MeetingReconciler

pytestmark = pytest.mark.unit

DAY = datetime(2026, 11, 3)
NOW = datetime(2026, 10, 20, 12, 0)


def meeting(external_id, hour, day=DAY, **fields):
    start = day + timedelta(hours=hour)
    return ParsedMeeting(external_id=external_id, title=fields.pop("title", external_id), start=start,
                         end=start + timedelta(minutes=30), **fields)


async def _stored(open_session, uid="user-1"):
    async with open_session() as session:
        return await MeetingsRepository(session).map_by_external_id(uid, "mtm")


class TestReconcile:
    async def test_drop_and_add_scenario(self, open_session):
        async with open_session() as session:
            first = await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10), meeting("B", 14)], NOW)
        assert first.created == 2

        async with open_session() as session:
            second = await MeetingReconciler(session).reconcile(
                "user-1", "mtm", [meeting("A", 10), meeting("C", 9, day=DAY + timedelta(days=1))], NOW + timedelta(minutes=15)
            )
        assert (second.created, second.updated, second.canceled, second.unchanged) == (1, 0, 1, 1)

        stored = await _stored(open_session)
        assert len(stored) == 3
        assert stored["A"].status == MEETING_CONFIRMED
        assert stored["B"].status == MEETING_CANCELED
        assert stored["C"].status == MEETING_CONFIRMED
        assert sum(1 for m in stored.values() if m.is_active) == 2

    async def test_identical_feed_writes_nothing(self, open_session):
        feed = [meeting("A", 10, location="Hall 1", lat=52.5, lon=13.4), meeting("B", 14)]
        async with open_session() as session:
            await MeetingReconciler(session).reconcile("user-1", "mtm", feed, NOW)
        before = {k: (m.updated_at, m.last_seen_at) for k, m in (await _stored(open_session)).items()}

        async with open_session() as session:
            again = await MeetingReconciler(session).reconcile("user-1", "mtm", feed, NOW + timedelta(hours=1))
        assert again.writes == 0
        assert again.unchanged == 2
        assert again.changed == []
        after = {k: (m.updated_at, m.last_seen_at) for k, m in (await _stored(open_session)).items()}
        assert after == before

    async def test_changed_fields_update_in_place(self, open_session):
        async with open_session() as session:
            await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)
        async with open_session() as session:
            result = await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 11, title="Moved")], NOW)
        assert result.updated == 1
        stored = (await _stored(open_session))["A"]
        assert stored.title == "Moved"
        assert stored.start == DAY + timedelta(hours=11)

    async def test_local_notes_survive_updates(self, open_session):
        async with open_session() as session:
            await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)
        async with open_session() as session:
            stored = await MeetingsRepository(session).map_by_external_id("user-1", "mtm")
            stored["A"].notes = "bring the deck"
            session.add(stored["A"])
            await session.commit()
        async with open_session() as session:
            await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 12, title="Moved")], NOW)
        stored = (await _stored(open_session))["A"]
        assert stored.notes == "bring the deck"
        assert stored.title == "Moved"

    async def test_reappearing_meeting_is_revived(self, open_session):
        async with open_session() as session:
            await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)
            await MeetingReconciler(session).reconcile("user-1", "mtm", [], NOW)
        assert (await _stored(open_session))["A"].status == MEETING_CANCELED

        async with open_session() as session:
            result = await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)
        assert result.updated == 1
        assert (await _stored(open_session))["A"].status == MEETING_CONFIRMED

    async def test_already_canceled_is_not_canceled_twice(self, open_session):
        async with open_session() as session:
            await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)
            first = await MeetingReconciler(session).reconcile("user-1", "mtm", [], NOW)
            second = await MeetingReconciler(session).reconcile("user-1", "mtm", [], NOW)
        assert first.canceled == 1
        assert second.writes == 0

    async def test_owners_are_isolated(self, open_session):
        async with open_session() as session:
            await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)
            result = await MeetingReconciler(session).reconcile("user-2", "mtm", [], NOW)
        assert result.canceled == 0
        assert (await _stored(open_session))["A"].status == MEETING_CONFIRMED


async def test_naive_utc_timestamps_survive_a_round_trip(open_session):
    async with open_session() as session:
        await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)

    stored = (await _stored(open_session))["A"]
    assert stored.start == DAY + timedelta(hours=10)
    assert stored.start.tzinfo is None
    assert (stored.created_at, stored.last_seen_at) == (NOW, NOW)


async def test_every_write_queues_a_mirror_update(open_session):
    async with open_session() as session:
        await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10), meeting("B", 14)], NOW)
    assert all(m.mirror_pending for m in (await _stored(open_session)).values())

    async with open_session() as session:
        repo = MeetingsRepository(session)
        for m in (await repo.map_by_external_id("user-1", "mtm")).values():
            await repo.mark_mirrored(m, f"evt-{m.external_id}")
        await MeetingReconciler(session).reconcile("user-1", "mtm", [meeting("A", 10)], NOW)

    stored = await _stored(open_session)
    assert stored["A"].mirror_pending is False
    assert stored["B"].mirror_pending is True
    assert stored["B"].mirror_ref == "evt-B"
