from typing import Optional
from urllib.parse import quote

import httpx

from calsync.errors import MirrorAuthError, RateLimited, parse_retry_after

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
EXTERNAL_ID_PROPERTY = "mtmUid"


class GoogleCalendarError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EventAlreadyExists(GoogleCalendarError):
    pass


class GoogleCalendarClient:
    """
    Minimal Calendar v3 REST surface used for mirroring: lookup by private
    extended property, insert with a caller-chosen id, and patch.
    """

    def __init__(self, access_token: str, http_client: httpx.AsyncClient, timeout: int = 20):
        self.access_token = access_token
        self.http_client = http_client
        self.timeout = timeout

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url += f"/{quote(event_id, safe='')}"
        return url

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            response = await self.http_client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            raise GoogleCalendarError(f"Google Calendar unreachable: {e.__class__.__name__}") from e

        if response.status_code == 401:
            raise MirrorAuthError("Google Calendar rejected the access token")
        if response.status_code == 429 or (response.status_code == 403 and _is_rate_limit(response)):
            raise RateLimited("Google Calendar rate limit", retry_after=parse_retry_after(response.headers.get("Retry-After")))
        return response

    async def find_by_external_id(self, calendar_id: str, external_id: str) -> Optional[dict]:
        params = {
            "privateExtendedProperty": f"{EXTERNAL_ID_PROPERTY}={external_id}",
            "showDeleted": "false",
            "maxResults": 1,
        }
        response = await self._request("GET", self._events_url(calendar_id), params=params)
        if response.status_code >= 400:
            raise GoogleCalendarError(f"Google Calendar list failed ({response.status_code}): {response.text}", response.status_code)
        items = response.json().get("items") or []
        return items[0] if items else None

    async def insert_event(self, calendar_id: str, body: dict) -> dict:
        response = await self._request("POST", self._events_url(calendar_id), json=body)
        if response.status_code == 409:
            raise EventAlreadyExists(f"event {body.get('id')} already exists", 409)
        if response.status_code >= 400:
            raise GoogleCalendarError(f"Google Calendar insert failed ({response.status_code}): {response.text}", response.status_code)
        return response.json()

    async def patch_event(self, calendar_id: str, event_id: str, body: dict) -> dict:
        response = await self._request("PATCH", self._events_url(calendar_id, event_id), json=body)
        if response.status_code >= 400:
            raise GoogleCalendarError(f"Google Calendar patch failed ({response.status_code}): {response.text}", response.status_code)
        return response.json()


def _is_rate_limit(response: httpx.Response) -> bool:
    try:
        errors = response.json().get("error", {}).get("errors", [])
    except (ValueError, AttributeError):
        return False
    return any(e.get("reason") in ("rateLimitExceeded", "userRateLimitExceeded") for e in errors if isinstance(e, dict))
