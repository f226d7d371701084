from datetime import datetime, timedelta

import pytest

from calsync.errors import FeedFormatError, NotConnected, RateLimited, ReauthRequired, TransientFetchError
from calsync.infrastructure.accounts_repo import AccountsRepository
from calsync.infrastructure.meetings_repo import MeetingsRepository
from calsync.models.account import STATUS_CONNECTED, STATUS_ERROR
from calsync.models.meeting import MEETING_CONFIRMED
from calsync.services.sync_service import SyncService, backoff_until, lock_key, run_sync_safely

pytestmark = pytest.mark.unit

MTM_API_FEED_URL = "https://api.mtm.test/v1/me/meetings.ics"


@pytest.fixture
def two_meetings(make_ics, make_vevent):
    return make_ics(
        make_vevent("a-1", "Pitch", "DTSTART:20261103T100000Z", "DTEND:20261103T103000Z"),
        make_vevent("a-2", "Demo", "DTSTART:20261103T140000Z", "DTEND:20261103T143000Z"),
    )


async def _account(open_session, provider="mtm"):
    async with open_session() as session:
        return await AccountsRepository(session).get("user-1", provider)


async def _active(open_session):
    async with open_session() as session:
        return await MeetingsRepository(session).list_active("user-1", "mtm")


class TestSyncCycle:
    async def test_successful_cycle(self, runtime, create_account, upstream, two_meetings, open_session, feed_url):
        await create_account()
        upstream.serve_feed(two_meetings)

        outcome = await SyncService(runtime).sync_account("user-1")

        assert outcome.event_count == 2
        assert outcome.reconcile.created == 2
        request = upstream.sent_to(feed_url)[0]
        assert request.headers["User-Agent"].startswith("ConferenceCalendarSync/")
        assert "Authorization" not in request.headers
        account = await _account(open_session)
        assert account.last_sync_at is not None
        assert account.last_error is None
        assert [m.status for m in await _active(open_session)] == [MEETING_CONFIRMED, MEETING_CONFIRMED]

    async def test_failed_fetch_cancels_nothing(self, runtime, create_account, upstream, two_meetings, open_session):
        await create_account()
        upstream.serve_feed(two_meetings)
        await SyncService(runtime).sync_account("user-1")

        upstream.serve_feed("upstream is down", status_code=503)
        with pytest.raises(TransientFetchError):
            await SyncService(runtime).sync_account("user-1")

        assert len(await _active(open_session)) == 2
        account = await _account(open_session)
        assert account.connection_status == STATUS_CONNECTED
        assert account.last_error == "fetch_failed"
        assert account.consecutive_errors == 1
        assert account.backoff_until > datetime.utcnow()

    async def test_non_calendar_body_cancels_nothing(self, runtime, create_account, upstream, two_meetings, open_session):
        await create_account()
        upstream.serve_feed(two_meetings)
        await SyncService(runtime).sync_account("user-1")

        upstream.serve_feed("<html>maintenance</html>")
        with pytest.raises(FeedFormatError):
            await SyncService(runtime).sync_account("user-1")
        assert len(await _active(open_session)) == 2

    async def test_rejected_feed_requires_reauth(self, runtime, create_account, upstream, open_session):
        await create_account()
        upstream.serve_feed("", status_code=403)

        with pytest.raises(ReauthRequired):
            await SyncService(runtime).sync_account("user-1")

        account = await _account(open_session)
        assert account.connection_status == STATUS_ERROR
        assert account.last_error == "reauth_required"

    async def test_feed_rate_limit_honours_retry_after(self, runtime, create_account, upstream, open_session, feed_url):
        await create_account()
        upstream.serve("GET", feed_url, 429, headers={"Retry-After": "1800"})

        with pytest.raises(RateLimited):
            await SyncService(runtime).sync_account("user-1")

        account = await _account(open_session)
        assert account.backoff_until > datetime.utcnow() + timedelta(minutes=29)

    async def test_oauth_account_uses_api_feed_with_bearer(self, runtime, create_account, upstream, two_meetings):
        await create_account(feed_url=None, access_token="mtm-at", refresh_token="mtm-rt")
        upstream.serve_feed(two_meetings, url=MTM_API_FEED_URL)

        outcome = await SyncService(runtime).sync_account("user-1")

        assert outcome.event_count == 2
        assert upstream.sent_to(MTM_API_FEED_URL)[0].headers["Authorization"] == "Bearer mtm-at"

    async def test_missing_account(self, runtime):
        with pytest.raises(NotConnected):
            await SyncService(runtime).sync_account("nobody")

    async def test_lock_released_after_failure(self, runtime, create_account, upstream, cache):
        await create_account()
        upstream.serve_feed("", status_code=500)
        with pytest.raises(TransientFetchError):
            await SyncService(runtime).sync_account("user-1")
        assert await cache.get(lock_key("user-1", "mtm")) is None

    async def test_in_flight_cycle_blocks_second(self, runtime, create_account, upstream, cache):
        await create_account()
        await cache.add(lock_key("user-1", "mtm"), "1", ttl=60)
        with pytest.raises(RateLimited):
            await SyncService(runtime).sync_account("user-1")
        assert upstream.requests == []


class TestSyncNow:
    async def test_second_call_inside_window_is_rejected_without_fetch(self, runtime, create_account, upstream, two_meetings, feed_url):
        await create_account()
        upstream.serve_feed(two_meetings)
        service = SyncService(runtime)

        await service.sync_now("user-1")
        with pytest.raises(RateLimited) as exc:
            await service.sync_now("user-1")

        assert len(upstream.sent_to(feed_url)) == 1
        assert 0 < exc.value.retry_after <= 600


class TestMirrorStep:
    async def test_mirror_without_google_records_error(self, runtime, create_account, upstream, two_meetings, open_session):
        await create_account(mirror_enabled=True, mirror_calendar_id="primary")
        upstream.serve_feed(two_meetings)

        outcome = await SyncService(runtime).sync_account("user-1")

        assert outcome.mirror is None
        assert (await _account(open_session)).last_error == "google_not_connected"

    async def test_mirror_projects_new_meetings(self, runtime, create_account, upstream, two_meetings, google_calendar):
        await create_account(mirror_enabled=True, mirror_calendar_id="primary")
        await create_account(provider="google", access_token="g-at", refresh_token="g-rt")
        upstream.serve_feed(two_meetings)

        outcome = await SyncService(runtime).sync_account("user-1")

        assert outcome.mirror.created == 2
        assert len(google_calendar.events) == 2
        assert all(e["summary"].startswith("[MTM] ") for e in google_calendar.events.values())

    async def test_unchanged_feed_does_not_touch_google(self, runtime, create_account, upstream, two_meetings, google_calendar, cache):
        await create_account(mirror_enabled=True, mirror_calendar_id="primary")
        await create_account(provider="google", access_token="g-at", refresh_token="g-rt")
        upstream.serve_feed(two_meetings)
        await SyncService(runtime).sync_account("user-1")
        calls = len(upstream.requests)

        outcome = await SyncService(runtime).sync_account("user-1")

        assert outcome.reconcile.writes == 0
        assert outcome.mirror.writes == 0
        # only the feed fetch went out
        assert len(upstream.requests) == calls + 1

    async def test_canceled_meeting_is_retried_after_failed_patch(
        self, runtime, create_account, upstream, two_meetings, google_calendar, make_ics, make_vevent, open_session
    ):
        await create_account(mirror_enabled=True, mirror_calendar_id="primary")
        await create_account(provider="google", access_token="g-at", refresh_token="g-rt")
        upstream.serve_feed(two_meetings)
        await SyncService(runtime).sync_account("user-1")

        # a-2 disappears upstream while Google is failing
        upstream.serve_feed(make_ics(make_vevent("a-1", "Pitch", "DTSTART:20261103T100000Z", "DTEND:20261103T103000Z")))
        google_calendar.fail_status = 500
        failed = await SyncService(runtime).sync_account("user-1")
        assert failed.reconcile.canceled == 1
        assert failed.mirror.failed == 1

        google_calendar.fail_status = None
        healed = await SyncService(runtime).sync_account("user-1")

        assert healed.reconcile.writes == 0
        assert healed.mirror.updated == 1
        statuses = {e["extendedProperties"]["private"]["mtmUid"]: e["status"] for e in google_calendar.events.values()}
        assert statuses == {"a-1": "confirmed", "a-2": "cancelled"}
        async with open_session() as session:
            stored = await MeetingsRepository(session).map_by_external_id("user-1", "mtm")
        assert not any(m.mirror_pending for m in stored.values())

    async def test_google_token_outage_does_not_fail_the_sync(self, runtime, create_account, upstream, two_meetings, google_calendar, open_session):
        await create_account(mirror_enabled=True, mirror_calendar_id="primary")
        await create_account(provider="google", access_token="g-at", refresh_token="g-rt", expires_in=-60)
        upstream.serve("POST", "https://oauth2.test/token", 503)
        upstream.serve_feed(two_meetings)

        outcome = await SyncService(runtime).sync_account("user-1")

        assert outcome.event_count == 2
        assert outcome.mirror.aborted is True
        assert outcome.mirror.abort_reason == "mirror_fetch_failed"
        assert google_calendar.events == {}
        account = await _account(open_session)
        assert account.last_error == "mirror_fetch_failed"
        assert account.last_sync_at is not None


def test_backoff_grows_and_caps():
    now = datetime(2026, 1, 1)
    assert backoff_until(1, now, 900) == now + timedelta(minutes=15)
    assert backoff_until(2, now, 900) == now + timedelta(minutes=30)
    assert backoff_until(50, now, 900) == now + timedelta(hours=6)


async def test_background_runner_never_raises(runtime):
    assert await run_sync_safely(runtime, "nobody") is None
