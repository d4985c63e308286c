# calsync/services/calendar/caldav/ical.py
import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import List, Optional, Tuple, Union

from icalendar import Calendar, Event

from calsync.services.calendar.base import ImportedEvent
from calsync.services.calendar.caldav.multistatus import caldav
from calsync.utils.timeutils import as_utc, coerce_datetime, utcnow

logger = logging.getLogger(__name__)

PRODID = "-//Calendar Sync//Calendar Integration//EN"

BEGIN_MARKER = "BEGIN:VCALENDAR"
END_MARKER = "END:VCALENDAR"
MAX_FALLBACK_BLOCKS = 1000


def build_event_ics(uid: str, start: datetime, end: datetime, summary: str,
                    dtstamp: Optional[datetime] = None) -> str:
    """Minimal VEVENT with UTC times, accepted by iCloud, Nextcloud and Radicale alike"""
    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", as_utc(dtstamp or utcnow()))
    event.add("dtstart", as_utc(start))
    event.add("dtend", as_utc(end))
    event.add("summary", summary)
    event.add("status", "CONFIRMED")
    event.add("transp", "OPAQUE")
    cal.add_component(event)

    return cal.to_ical().decode("utf-8")


def scan_calendar_blocks(text: str, max_blocks: int = MAX_FALLBACK_BLOCKS) -> List[str]:
    """Literal-marker scan for VCALENDAR blocks; linear in len(text)"""
    blocks = []
    position = 0
    while len(blocks) < max_blocks:
        start = text.find(BEGIN_MARKER, position)
        if start == -1:
            break
        end = text.find(END_MARKER, start + len(BEGIN_MARKER))
        if end == -1:
            break
        end += len(END_MARKER)
        blocks.append(text[start:end])
        position = end
    return blocks


def extract_calendar_blocks(body: Union[str, bytes]) -> List[str]:
    """calendar-data payloads of a REPORT multistatus, falling back to a marker scan"""
    if not body:
        return []
    raw = body.encode("utf-8") if isinstance(body, str) else body
    try:
        root = ET.fromstring(raw)
    except ET.ParseError:
        logger.warning("REPORT response is not well-formed XML, scanning for VCALENDAR markers")
        text = body if isinstance(body, str) else body.decode("utf-8", errors="replace")
        return scan_calendar_blocks(text)
    return [element.text for element in root.iter(caldav("calendar-data")) if element.text and element.text.strip()]


def _vevents(calendars):
    for calendar in calendars:
        yield from calendar.walk("VEVENT")


def parse_calendar_block(block: str, calendar_url: str) -> List[ImportedEvent]:
    """Every VEVENT in one calendar-data payload; raises ValueError if any is unusable"""
    events = []
    for component in _vevents(Calendar.from_ical(block, multiple=True)):
        uid = component.get("uid")
        dtstart = component.get("dtstart")
        if not uid or dtstart is None:
            raise ValueError("VEVENT is missing UID or DTSTART")
        starts_at = coerce_datetime(dtstart.dt)

        dtend = component.get("dtend")
        duration = component.get("duration")
        if dtend is not None:
            ends_at = coerce_datetime(dtend.dt)
        elif duration is not None:
            ends_at = starts_at + duration.dt
        else:
            raise ValueError(f"VEVENT {uid} has neither DTEND nor DURATION")

        events.append(ImportedEvent(
            external_event_id=str(uid),
            external_calendar_id=calendar_url,
            starts_at=starts_at,
            ends_at=ends_at,
            summary=str(component.get("summary") or "Untitled Event"),
        ))
    return events


def parse_report(body: Union[str, bytes], calendar_url: str) -> Tuple[List[ImportedEvent], List[str]]:
    """Parse each calendar block independently; a bad block is logged and skipped"""
    events = []
    errors = []
    for index, block in enumerate(extract_calendar_blocks(body)):
        try:
            events.extend(parse_calendar_block(block, calendar_url))
        except Exception as e:
            logger.warning(f"iCal parse error in block {index} from {calendar_url}: {e}")
            errors.append(f"Unparseable calendar data from {calendar_url}: {e}")
    return events, errors
