# calsync/services/feed_parser.py
"""
Turns an iCalendar feed into canonical meeting records.

Every instant leaves this module as a naive UTC datetime; the zone the feed
expressed it in is kept separately in `time_zone` (normalized to IANA where we
recognise the abbreviation).
"""
import hashlib
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from icalendar import Calendar
from pydantic import BaseModel, Field

from calsync.errors import FeedFormatError
from calsync.models.meeting import (
    MEETING_CANCELED,
    MEETING_CONFIRMED,
    MEETING_DECLINED,
    MEETING_PENDING,
)

logger = structlog.get_logger(__name__)

DEFAULT_DURATION = timedelta(hours=1)
ALL_DAY_DURATION = timedelta(days=1)
DEFAULT_TITLE = "Untitled Event"
SYNTHETIC_ID_PREFIX = "synth-"

# properties that change on every export without the meeting changing
VOLATILE_PROPERTIES = frozenset({"DTSTAMP", "SEQUENCE", "LAST-MODIFIED", "CREATED"})

GEO_IN_LOCATION = re.compile(r"geo:\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE)

TZ_ABBREVIATIONS: Dict[str, str] = {
    "UTC": "UTC",
    "Z": "UTC",
    "GMT": "Europe/London",
    "BST": "Europe/London",
    "WET": "Europe/Lisbon",
    "WEST": "Europe/Lisbon",
    "CET": "Europe/Berlin",
    "CEST": "Europe/Berlin",
    "MEZ": "Europe/Berlin",
    "MESZ": "Europe/Berlin",
    "EET": "Europe/Athens",
    "EEST": "Europe/Athens",
    "MSK": "Europe/Moscow",
    "IST": "Asia/Kolkata",
    "SGT": "Asia/Singapore",
    "HKT": "Asia/Hong_Kong",
    "JST": "Asia/Tokyo",
    "KST": "Asia/Seoul",
    "AEST": "Australia/Sydney",
    "AEDT": "Australia/Sydney",
    "NZST": "Pacific/Auckland",
    "NZDT": "Pacific/Auckland",
    "BRT": "America/Sao_Paulo",
    "EST": "America/New_York",
    "EDT": "America/New_York",
    "CST": "America/Chicago",
    "CDT": "America/Chicago",
    "MST": "America/Denver",
    "MDT": "America/Denver",
    "PST": "America/Los_Angeles",
    "PDT": "America/Los_Angeles",
    "AKST": "America/Anchorage",
    "AKDT": "America/Anchorage",
    "HST": "Pacific/Honolulu",
    # Outlook-style names
    "W. EUROPE STANDARD TIME": "Europe/Berlin",
    "CENTRAL EUROPE STANDARD TIME": "Europe/Budapest",
    "ROMANCE STANDARD TIME": "Europe/Paris",
    "GMT STANDARD TIME": "Europe/London",
    "EASTERN STANDARD TIME": "America/New_York",
    "CENTRAL STANDARD TIME": "America/Chicago",
    "MOUNTAIN STANDARD TIME": "America/Denver",
    "PACIFIC STANDARD TIME": "America/Los_Angeles",
}


class ParsedMeeting(BaseModel):
    external_id: str
    id_synthesized: bool = False
    title: str = DEFAULT_TITLE
    description: Optional[str] = None
    start: datetime
    end: datetime
    time_zone: Optional[str] = None
    location: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    participants: List[dict] = Field(default_factory=list)
    status: str = MEETING_CONFIRMED


def normalize_tz(name: Optional[str]) -> Optional[str]:
    """Map an abbreviation to IANA; unknown names pass through unchanged."""
    if not name:
        return None
    cleaned = name.strip().strip("/")
    return TZ_ABBREVIATIONS.get(cleaned.upper(), cleaned)


def _zone(name: Optional[str]) -> Optional[ZoneInfo]:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def is_iana_zone(name: Optional[str]) -> bool:
    return _zone(name) is not None


def _to_utc_naive(value: date, zone_name: Optional[str]) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.combine(value, time())
    if value.tzinfo is None:
        value = value.replace(tzinfo=_zone(zone_name) or timezone.utc)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _zone_of(value: date) -> Optional[str]:
    tzinfo = getattr(value, "tzinfo", None)
    if tzinfo is None:
        return None
    key = getattr(tzinfo, "key", None) or getattr(tzinfo, "zone", None)
    if key:
        return key
    if value.utcoffset() == timedelta(0):
        return "UTC"
    return None


def _text(component, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _ical_text(value: Any) -> str:
    to_ical = getattr(value, "to_ical", None)
    if callable(to_ical):
        raw = to_ical()
        return raw.decode("utf-8", "replace") if isinstance(raw, bytes) else str(raw)
    return str(value)


def synthesize_external_id(component) -> str:
    """
    Fallback key for blocks without a UID: a digest of the block's content
    minus volatile stamps. Any upstream edit yields a new key.
    """
    parts = []
    for name, value in sorted(component.items(), key=lambda kv: kv[0]):
        if name.upper() in VOLATILE_PROPERTIES:
            continue
        for v in _as_list(value):
            parts.append(f"{name.upper()}:{_ical_text(v)}")
    digest = hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()
    return SYNTHETIC_ID_PREFIX + digest


def _participants(component) -> List[dict]:
    people = []
    for attendee in _as_list(component.get("ATTENDEE")):
        address = str(attendee)
        email = address[7:] if address.lower().startswith("mailto:") else address
        params = getattr(attendee, "params", {}) or {}
        people.append({
            "email": email or None,
            "name": params.get("CN"),
            "status": (params.get("PARTSTAT") or "").upper() or None,
        })
    return people


def _status(component, participants: List[dict]) -> str:
    raw = (_text(component, "STATUS") or "").upper()
    if raw == "CANCELLED":
        return MEETING_CANCELED
    partstats = {p.get("status") for p in participants}
    if "DECLINED" in partstats:
        return MEETING_DECLINED
    if raw == "TENTATIVE" or partstats & {"NEEDS-ACTION", "TENTATIVE"}:
        return MEETING_PENDING
    return MEETING_CONFIRMED


def _coordinates(component, location: Optional[str]):
    geo = component.get("GEO")
    if geo is not None:
        lat = getattr(geo, "latitude", None)
        lon = getattr(geo, "longitude", None)
        if lat is not None and lon is not None:
            return float(lat), float(lon)
    if location:
        match = GEO_IN_LOCATION.search(location)
        if match:
            return float(match.group(1)), float(match.group(2))
    return None, None


def parse_event(component) -> Optional[ParsedMeeting]:
    dtstart = component.get("DTSTART")
    start_value = getattr(dtstart, "dt", None)
    if not isinstance(start_value, date):
        return None

    raw_tz = dtstart.params.get("TZID") if hasattr(dtstart, "params") else None
    time_zone = normalize_tz(raw_tz) if raw_tz else _zone_of(start_value)
    start = _to_utc_naive(start_value, time_zone)

    all_day = not isinstance(start_value, datetime)
    dtend = component.get("DTEND")
    end_value = getattr(dtend, "dt", None)
    duration = getattr(component.get("DURATION"), "dt", None)
    if isinstance(end_value, date):
        end = _to_utc_naive(end_value, time_zone)
    elif isinstance(duration, timedelta):
        end = start + duration
    else:
        end = start + (ALL_DAY_DURATION if all_day else DEFAULT_DURATION)
    if end < start:
        end = start + DEFAULT_DURATION

    uid = _text(component, "UID")
    synthesized = uid is None
    external_id = uid or synthesize_external_id(component)
    recurrence = getattr(component.get("RECURRENCE-ID"), "dt", None)
    if uid and isinstance(recurrence, date):
        external_id = f"{uid}@{_to_utc_naive(recurrence, time_zone).isoformat()}"

    location = _text(component, "LOCATION")
    lat, lon = _coordinates(component, location)
    participants = _participants(component)

    return ParsedMeeting(
        external_id=external_id,
        id_synthesized=synthesized,
        title=_text(component, "SUMMARY") or DEFAULT_TITLE,
        description=_text(component, "DESCRIPTION"),
        start=start,
        end=end,
        time_zone=time_zone,
        location=location,
        lat=lat,
        lon=lon,
        participants=participants,
        status=_status(component, participants),
    )


def parse_feed(feed_text: str) -> List[ParsedMeeting]:
    try:
        calendar = Calendar.from_ical(feed_text)
    except (ValueError, IndexError, KeyError) as e:
        raise FeedFormatError("calendar document could not be parsed") from e

    meetings: Dict[str, ParsedMeeting] = {}
    skipped = 0
    for component in calendar.walk("VEVENT"):
        try:
            meeting = parse_event(component)
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning("feed_event_unparseable", error=str(e), uid=_text(component, "UID"))
            meeting = None
        if meeting is None:
            skipped += 1
            continue
        # later blocks with the same key win
        meetings[meeting.external_id] = meeting

    synthesized = sum(1 for m in meetings.values() if m.id_synthesized)
    logger.info("feed_parsed", meetings=len(meetings), skipped=skipped, synthesized_ids=synthesized)
    return list(meetings.values())
