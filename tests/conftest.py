import json
import os
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote

# module level config is read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from calsync.infrastructure.database import init_db, session_factory
from calsync.infrastructure.vault import SecretVault, generate_key
from calsync.models.account import Account, PROVIDER_GOOGLE, PROVIDER_MTM, STATUS_CONNECTED
from calsync.services.oauth_service import OAuthProvider
from calsync.services.runtime import SyncRuntime
from calsync.UAA.utils import issue_access_token

FEED_URL = "https://feeds.mtm.test/u/secret-token/meetings.ics"
MTM_API_FEED_URL = "https://api.mtm.test/v1/me/meetings.ics"
MTM_TOKEN_URL = "https://auth.mtm.test/oauth/token"
MTM_REVOKE_URL = "https://auth.mtm.test/oauth/revoke"
GOOGLE_TOKEN_URL = "https://oauth2.test/token"
GOOGLE_REVOKE_URL = "https://oauth2.test/revoke"
GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"


class InMemoryCache:
    """Cache double with the same semantics as RedisCache, expiring on a monotonic clock."""

    def __init__(self):
        self.data: Dict[str, tuple] = {}

    def _live(self, key):
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and expires <= time.monotonic():
            del self.data[key]
            return None
        return entry

    async def get(self, key):
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key, value, ttl=None):
        self.data[key] = (value, time.monotonic() + ttl if ttl else None)

    async def add(self, key, value, ttl):
        if self._live(key):
            return False
        await self.set(key, value, ttl)
        return True

    async def pop(self, key):
        entry = self._live(key)
        self.data.pop(key, None)
        return entry[0] if entry else None

    async def delete(self, key):
        self.data.pop(key, None)

    async def ttl(self, key):
        entry = self._live(key)
        if not entry or entry[1] is None:
            return None
        return int(entry[1] - time.monotonic())


class Upstream:
    """
    Every outbound request from the shared AsyncClient lands here.
    Tests register handlers by method and url prefix; the newest match wins.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: list = []

    def route(self, method: str, prefix: str, handler: Callable[[httpx.Request], httpx.Response]):
        self.routes.insert(0, (method, prefix, handler))

    def serve(self, method: str, prefix: str, status_code: int = 200, **kwargs):
        self.route(method, prefix, lambda request: httpx.Response(status_code, **kwargs))

    def serve_feed(self, text: str, url: str = FEED_URL, status_code: int = 200):
        self.serve("GET", url, status_code, text=text, headers={"Content-Type": "text/calendar"})

    def sent_to(self, prefix: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(prefix) and (method is None or r.method == method)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, prefix, handler in self.routes:
            if request.method == method and str(request.url).startswith(prefix):
                return handler(request)
        return httpx.Response(500, json={"error": "unexpected request"})


class FakeGoogleCalendar:
    """Stateful stand-in for the Calendar v3 events collection of one calendar."""

    def __init__(self):
        self.events: Dict[str, dict] = {}
        self.fail_status: Optional[int] = None
        self.fail_insert_for: set = set()
        self.drop_next_insert_response = False

    def install(self, upstream: Upstream, events_url: str = GOOGLE_EVENTS_URL):
        upstream.route("GET", events_url, self.list_events)
        upstream.route("POST", events_url, self.insert)
        upstream.route("PATCH", events_url + "/", self.patch)

    def _failure(self):
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"error": {"code": self.fail_status}})
        return None

    def list_events(self, request):
        failure = self._failure()
        if failure is not None:
            return failure
        wanted = request.url.params.get("privateExtendedProperty", "")
        _, _, external_id = wanted.partition("=")
        items = [
            e for e in self.events.values()
            if e["extendedProperties"]["private"].get("mtmUid") == external_id and e.get("status") != "cancelled"
        ]
        return httpx.Response(200, json={"items": items[:1]})

    def insert(self, request):
        failure = self._failure()
        if failure is not None:
            return failure
        body = json.loads(request.content)
        if body["extendedProperties"]["private"]["mtmUid"] in self.fail_insert_for:
            return httpx.Response(500, json={"error": {"message": "backend error"}})
        if body["id"] in self.events:
            return httpx.Response(409, json={"error": {"message": "duplicate"}})
        self.events[body["id"]] = body
        if self.drop_next_insert_response:
            self.drop_next_insert_response = False
            raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(200, json=body)

    def patch(self, request):
        failure = self._failure()
        if failure is not None:
            return failure
        event_id = unquote(request.url.path.rsplit("/", 1)[-1])
        if event_id not in self.events:
            return httpx.Response(404, json={"error": {"message": "not found"}})
        self.events[event_id].update(json.loads(request.content))
        return httpx.Response(200, json=self.events[event_id])


def vevent(uid: Optional[str], summary: Optional[str] = "Meeting", dtstart: str = "DTSTART:20261103T100000Z",
           dtend: Optional[str] = "DTEND:20261103T103000Z", *extra: str) -> str:
    lines = ["BEGIN:VEVENT"]
    if uid:
        lines.append(f"UID:{uid}")
    lines.append("DTSTAMP:20261001T080000Z")
    if dtstart:
        lines.append(dtstart)
    if dtend:
        lines.append(dtend)
    if summary:
        lines.append(f"SUMMARY:{summary}")
    lines.extend(extra)
    lines.append("END:VEVENT")
    return "\r\n".join(lines)


def build_ics(*events: str) -> str:
    return "\r\n".join(["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//MTM//Meetings//EN", *events, "END:VCALENDAR"]) + "\r\n"


@pytest.fixture
def make_ics():
    return build_ics


@pytest.fixture
def make_vevent():
    return vevent


@pytest.fixture
def feed_url():
    return FEED_URL


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'calsync.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def open_session(engine):
    return session_factory(engine)


@pytest.fixture
async def session(open_session):
    async with open_session() as session:
        yield session


@pytest.fixture
def vault():
    return SecretVault(generate_key())


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def google_calendar(upstream):
    calendar = FakeGoogleCalendar()
    calendar.install(upstream)
    return calendar


@pytest.fixture
def providers():
    return {
        PROVIDER_MTM: OAuthProvider(
            name=PROVIDER_MTM,
            client_id="mtm-client",
            client_secret="mtm-secret",
            auth_url="https://auth.mtm.test/oauth/authorize",
            token_url=MTM_TOKEN_URL,
            revoke_url=MTM_REVOKE_URL,
            redirect_uri="https://calsync.test/api/oauth/mtm/callback",
            scopes="meetings.read",
        ),
        PROVIDER_GOOGLE: OAuthProvider(
            name=PROVIDER_GOOGLE,
            client_id="google-client",
            client_secret="google-secret",
            auth_url="https://accounts.google.test/o/oauth2/v2/auth",
            token_url=GOOGLE_TOKEN_URL,
            revoke_url=GOOGLE_REVOKE_URL,
            redirect_uri="https://calsync.test/api/oauth/google/callback",
            scopes="https://www.googleapis.com/auth/calendar.events",
            extra_auth_params={"access_type": "offline", "prompt": "consent"},
        ),
    }


@pytest.fixture
async def http_client(upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    yield client
    await client.aclose()


@pytest.fixture
def runtime(open_session, cache, vault, http_client, providers):
    return SyncRuntime(
        session_factory=open_session,
        cache=cache,
        vault=vault,
        http_client=http_client,
        providers=providers,
        interval_seconds=900,
        batch_size=25,
        concurrency=5,
        rate_limit_seconds=600,
        cycle_budget_seconds=5,
        mtm_api_feed_url=MTM_API_FEED_URL,
    )


@pytest.fixture
def create_account(open_session, vault):
    """Persists an account in its own session, the way the API would have left it."""

    async def _create(uid: str = "user-1", provider: str = PROVIDER_MTM, feed_url: Optional[str] = FEED_URL,
                      access_token: Optional[str] = None, refresh_token: Optional[str] = None,
                      expires_in: Optional[int] = 3600, **fields) -> Account:
        account = Account(uid=uid, provider=provider, connection_status=STATUS_CONNECTED, **fields)
        if provider == PROVIDER_MTM and feed_url:
            account.encrypted_feed_url = vault.encrypt(feed_url)
        if access_token:
            account.encrypted_access_token = vault.encrypt(access_token)
            account.expires_at = datetime.utcnow() + timedelta(seconds=expires_in) if expires_in else None
        if refresh_token:
            account.encrypted_refresh_token = vault.encrypt(refresh_token)
        async with open_session() as session:
            session.add(account)
            await session.commit()
            await session.refresh(account)
        return account

    return _create


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {issue_access_token('user-1')}"}


@pytest.fixture
async def api(runtime):
    from calsync.main import app

    app.state.runtime = runtime
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://calsync.test") as client:
        yield client
    app.state.runtime = None
