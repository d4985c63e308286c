# calsync/services/calendar/caldav/multistatus.py
"""WebDAV/CalDAV request bodies and multistatus parsing."""
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional, Union
from urllib.parse import urljoin, urlparse

from calsync.services.calendar.errors import CalendarSyncError, SyncErrorKind

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"

WRITE_PRIVILEGES = ("write", "write-content", "all")

CURRENT_USER_PRINCIPAL_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:">
  <D:prop>
    <D:current-user-principal />
  </D:prop>
</D:propfind>
"""

CALENDAR_HOME_SET_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <C:calendar-home-set />
  </D:prop>
</D:propfind>
"""

ICLOUD_CALENDAR_LIST_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav" xmlns:ICAL="http://apple.com/ns/ical/">
  <D:prop>
    <D:resourcetype />
    <D:displayname />
    <ICAL:calendar-color />
    <C:supported-calendar-component-set />
    <D:getctag />
    <D:current-user-privilege-set />
  </D:prop>
</D:propfind>
"""

NEXTCLOUD_CALENDAR_LIST_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav" xmlns:CS="http://nextcloud.com/ns">
  <D:prop>
    <D:resourcetype />
    <D:displayname />
    <C:calendar-description />
    <C:supported-calendar-component-set />
    <D:getctag />
    <CS:calendar-color />
    <D:current-user-privilege-set />
  </D:prop>
</D:propfind>
"""

GENERIC_CALENDAR_LIST_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:resourcetype />
    <D:displayname />
    <C:calendar-description />
    <C:supported-calendar-component-set />
    <D:getctag />
    <D:current-user-privilege-set />
  </D:prop>
</D:propfind>
"""

CALENDAR_CHECK_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:resourcetype />
    <C:supported-calendar-component-set />
  </D:prop>
</D:propfind>
"""

CALENDAR_QUERY_XML = """<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag />
    <C:calendar-data />
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">
        <C:time-range start="{start}" end="{end}"/>
      </C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>
"""


def dav(name: str) -> str:
    return f"{{{DAV_NS}}}{name}"


def caldav(name: str) -> str:
    return f"{{{CALDAV_NS}}}{name}"


def calendar_query_xml(start, end) -> str:
    """REPORT body for events overlapping [start, end]; both aware UTC datetimes"""
    return CALENDAR_QUERY_XML.format(start=start.strftime("%Y%m%dT%H%M%SZ"), end=end.strftime("%Y%m%dT%H%M%SZ"))


@dataclass(frozen=True)
class CalendarCollection:
    url: str
    name: str
    is_calendar: bool
    supports_events: bool
    writable: bool

    @property
    def usable(self) -> bool:
        return self.is_calendar and self.supports_events and self.writable


def parse_document(body: Union[str, bytes]) -> ET.Element:
    if isinstance(body, str):
        body = body.encode("utf-8")
    try:
        return ET.fromstring(body)
    except ET.ParseError as e:
        raise CalendarSyncError(SyncErrorKind.PARSE_FAILED, f"Malformed multistatus response: {e}")


def _propstat_ok(propstat: ET.Element) -> bool:
    status = (propstat.findtext(dav("status")) or "").split()
    # Missing status is treated as success
    return len(status) < 2 or status[1].startswith("2")


def _ok_props(response: ET.Element) -> List[ET.Element]:
    props = []
    for propstat in response.findall(dav("propstat")):
        prop = propstat.find(dav("prop"))
        if prop is not None and _propstat_ok(propstat):
            props.append(prop)
    return props


def _find_prop(props: List[ET.Element], tag: str) -> Optional[ET.Element]:
    for prop in props:
        found = prop.find(tag)
        if found is not None:
            return found
    return None


def find_href(body: Union[str, bytes], property_tag: str, base_url: str) -> Optional[str]:
    """Absolute URL of the first <href> inside ``property_tag`` with a 2xx propstat"""
    root = parse_document(body)
    for response in root.iter(dav("response")):
        element = _find_prop(_ok_props(response), property_tag)
        if element is None:
            continue
        href = (element.findtext(dav("href")) or "").strip()
        if href:
            return urljoin(base_url, href)
    return None


def _collection_from_response(response: ET.Element, request_url: str) -> Optional[CalendarCollection]:
    href = (response.findtext(dav("href")) or "").strip()
    if not href:
        return None
    props = _ok_props(response)

    resourcetype = _find_prop(props, dav("resourcetype"))
    is_calendar = resourcetype is not None and resourcetype.find(caldav("calendar")) is not None

    component_set = _find_prop(props, caldav("supported-calendar-component-set"))
    if component_set is None:
        supports_events = True
    else:
        supports_events = any(
            (comp.get("name") or "").upper() == "VEVENT" for comp in component_set.iter(caldav("comp"))
        )

    privilege_set = _find_prop(props, dav("current-user-privilege-set"))
    if privilege_set is None:
        writable = True
    else:
        writable = any(privilege_set.find(f".//{dav(name)}") is not None for name in WRITE_PRIVILEGES)

    display_name_element = _find_prop(props, dav("displayname"))
    display_name = (display_name_element.text or "").strip() if display_name_element is not None else ""
    url = urljoin(request_url, href)
    return CalendarCollection(
        url=url,
        name=display_name or urlparse(url).path.rstrip("/").rsplit("/", 1)[-1],
        is_calendar=is_calendar,
        supports_events=supports_events,
        writable=writable,
    )


def parse_calendar_collections(body: Union[str, bytes], request_url: str) -> List[CalendarCollection]:
    """Child collections from a depth-1 PROPFIND, excluding the requested collection itself"""
    root = parse_document(body)
    request_path = urlparse(request_url).path.rstrip("/")
    collections = []
    for response in root.findall(dav("response")):
        collection = _collection_from_response(response, request_url)
        if collection is None or not collection.url.endswith("/"):
            continue
        if urlparse(collection.url).path.rstrip("/") == request_path:
            continue
        collections.append(collection)
    return collections


def usable_calendar_urls(body: Union[str, bytes], request_url: str) -> List[str]:
    collections = parse_calendar_collections(body, request_url)
    usable = [c for c in collections if c.usable]
    if usable:
        logger.info(f"Found {len(usable)} calendar(s) at {request_url}: {', '.join(c.name for c in usable)}")
    return [c.url for c in usable]


def is_event_calendar(body: Union[str, bytes], request_url: str) -> bool:
    """True when a depth-0 PROPFIND shows a calendar collection that explicitly lists VEVENT"""
    try:
        root = parse_document(body)
    except CalendarSyncError:
        return False
    for response in root.findall(dav("response")):
        collection = _collection_from_response(response, request_url)
        if collection is None or not collection.is_calendar:
            continue
        component_set = _find_prop(_ok_props(response), caldav("supported-calendar-component-set"))
        if component_set is not None and collection.supports_events:
            return True
    return False
