# calsync/infrastructure/feed_client.py
from typing import Optional

import httpx
import structlog

from calsync.errors import (
    FeedFormatError,
    RateLimited,
    ReauthRequired,
    TransientFetchError,
    parse_retry_after,
)

logger = structlog.get_logger(__name__)

USER_AGENT = "ConferenceCalendarSync/1.0"
FETCH_TIMEOUT_SECONDS = 10.0
PROBE_TIMEOUT_SECONDS = 5.0
MAX_FEED_BYTES = 5 * 1024 * 1024
CALENDAR_MARKER = "BEGIN:VCALENDAR"


def looks_like_calendar(text: str) -> bool:
    return CALENDAR_MARKER in text[:4096].upper()


class FeedClient:
    """
    Retrieves calendar feeds over HTTPS.
    The httpx client is injected so every caller shares one connection pool
    (and tests can hand in a MockTransport).
    """

    def __init__(self, http_client: httpx.AsyncClient, timeout: float = FETCH_TIMEOUT_SECONDS):
        self.http_client = http_client
        self.timeout = timeout

    def _headers(self, access_token: Optional[str]) -> dict:
        headers = {"User-Agent": USER_AGENT, "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.1"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def fetch(self, url: str, access_token: Optional[str] = None) -> str:
        try:
            resp = await self.http_client.get(url, headers=self._headers(access_token), timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransientFetchError("feed host timed out") from e
        except httpx.HTTPError as e:
            raise TransientFetchError(f"feed host unreachable: {e.__class__.__name__}") from e

        if resp.status_code in (401, 403):
            raise ReauthRequired(f"feed rejected credentials ({resp.status_code})")
        if resp.status_code == 429:
            raise RateLimited("feed host rate limited", retry_after=parse_retry_after(resp.headers.get("Retry-After")))
        if not resp.is_success:
            raise TransientFetchError(f"feed returned HTTP {resp.status_code}")

        if len(resp.content) > MAX_FEED_BYTES:
            raise FeedFormatError("feed exceeds size limit")
        text = resp.text
        if not looks_like_calendar(text):
            raise FeedFormatError("response is not a calendar document")

        logger.debug("feed_fetched", bytes=len(resp.content), status=resp.status_code)
        return text

    async def probe(self, url: str) -> Optional[str]:
        """
        Short reachability check used when connecting a feed.
        Returns None when the URL serves a calendar, otherwise an error code.
        """
        try:
            resp = await self.http_client.get(url, headers=self._headers(None), timeout=PROBE_TIMEOUT_SECONDS)
        except httpx.HTTPError as e:
            logger.info("feed_probe_failed", error=e.__class__.__name__)
            return "unreachable"
        if not resp.is_success:
            logger.info("feed_probe_failed", status=resp.status_code)
            return "unreachable"
        if not looks_like_calendar(resp.text):
            return "invalid_format"
        return None
