# calsync/services/calendar/caldav/discovery.py
"""
Calendar discovery strategies.

Each strategy resolves the ordered list of writable, VEVENT-capable calendar
collection URLs for one account. Strategies hold no cached state; the
client's caller keeps the result for the length of a sync session.
"""
import logging
import re
from typing import List, Optional
from urllib.parse import quote, urlparse

from calsync.schemas.calendar_events import CaldavProvider
from calsync.services.calendar.caldav.multistatus import (
    CALENDAR_CHECK_XML,
    CALENDAR_HOME_SET_XML,
    CURRENT_USER_PRINCIPAL_XML,
    GENERIC_CALENDAR_LIST_XML,
    ICLOUD_CALENDAR_LIST_XML,
    NEXTCLOUD_CALENDAR_LIST_XML,
    caldav,
    dav,
    find_href,
    is_event_calendar,
    usable_calendar_urls,
)
from calsync.services.calendar.errors import CalendarSyncError, SyncErrorKind

logger = logging.getLogger(__name__)

APP_PASSWORD_HINT = re.compile(r"app[\s_-]*password", re.IGNORECASE)


def url_origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class CalendarDiscovery:
    kind: CaldavProvider = None
    label = "CalDAV"
    extra_headers = {}

    def __init__(self, server_url: Optional[str] = None, username: Optional[str] = None):
        self.server_url = server_url
        self.username = username

    def discover(self, client) -> List[str]:
        raise NotImplementedError

    def classify_error(self, response) -> Optional[SyncErrorKind]:
        return None

    def enumerate(self, client, home_url: str, body: str) -> List[str]:
        response = client.propfind(home_url, body, depth="1")
        return usable_calendar_urls(response.content, home_url)


class IcloudDiscovery(CalendarDiscovery):
    """principal -> calendar-home-set -> depth-1 enumeration"""

    kind = CaldavProvider.ICLOUD
    label = "CalDAV"
    BASE_URL = "https://caldav.icloud.com"
    extra_headers = {"Accept": "application/xml, text/xml"}

    def discover(self, client) -> List[str]:
        # iCloud answers depth-1 on the root with 400
        response = client.propfind(self.BASE_URL, CURRENT_USER_PRINCIPAL_XML, depth="0")
        principal_url = find_href(response.content, dav("current-user-principal"), self.BASE_URL)
        if not principal_url:
            raise CalendarSyncError(SyncErrorKind.DISCOVERY_FAILED, "Could not find principal URL in response")

        response = client.propfind(principal_url, CALENDAR_HOME_SET_XML, depth="0")
        home_url = find_href(response.content, caldav("calendar-home-set"), principal_url)
        if not home_url:
            raise CalendarSyncError(SyncErrorKind.DISCOVERY_FAILED, "Could not find calendar home set in response")

        return self.enumerate(client, home_url, ICLOUD_CALENDAR_LIST_XML)


def nextcloud_base_url(url: str) -> str:
    """Instance root: everything before /remote.php, so sub-path installs keep their prefix"""
    parsed = urlparse(url)
    path = parsed.path
    index = path.find("/remote.php")
    prefix = path[:index] if index >= 0 else path.rstrip("/")
    return f"{parsed.scheme}://{parsed.netloc}{prefix}"


class NextcloudDiscovery(CalendarDiscovery):
    kind = CaldavProvider.NEXTCLOUD
    label = "Nextcloud CalDAV"
    extra_headers = {"Accept": "application/xml, text/xml"}

    def home_set_url(self) -> str:
        if not self.server_url:
            raise CalendarSyncError(SyncErrorKind.MISSING_CREDENTIALS, "Nextcloud server URL is required")
        return f"{nextcloud_base_url(self.server_url)}/remote.php/dav/calendars/{quote(self.username or '')}/"

    def discover(self, client) -> List[str]:
        return self.enumerate(client, self.home_set_url(), NEXTCLOUD_CALENDAR_LIST_XML)

    def classify_error(self, response) -> Optional[SyncErrorKind]:
        # Accounts with 2FA reject the login password
        if response.status_code in (401, 403) and APP_PASSWORD_HINT.search(response.text[:4096]):
            return SyncErrorKind.APP_PASSWORD_REQUIRED
        return None


class GenericCaldavDiscovery(CalendarDiscovery):
    kind = CaldavProvider.GENERIC
    label = "Generic CalDAV"
    PROBE_PATHS = ["/calendars/", "/cal/", "/calendar/", "/dav/calendars/", "/caldav/"]

    def discover(self, client) -> List[str]:
        url = self.server_url
        if not url:
            raise CalendarSyncError(
                SyncErrorKind.MISSING_CREDENTIALS,
                "CalDAV server URL is required for generic CalDAV connections",
            )

        if self._is_calendar_collection(client, url):
            return [url]

        urls = self._try_enumerate(client, url)
        if urls:
            return urls

        origin = url_origin(url)
        for path in self.PROBE_PATHS:
            urls = self._try_enumerate(client, f"{origin}{path}")
            if urls:
                return urls
        return []

    def _is_calendar_collection(self, client, url: str) -> bool:
        try:
            response = client.propfind(url, CALENDAR_CHECK_XML, depth="0")
        except CalendarSyncError as e:
            if e.kind.deactivates_connection:
                raise
            return False
        return is_event_calendar(response.content, url)

    def _try_enumerate(self, client, url: str) -> List[str]:
        try:
            return self.enumerate(client, url, GENERIC_CALENDAR_LIST_XML)
        except CalendarSyncError as e:
            if e.kind.deactivates_connection:
                raise
            logger.debug(f"Discovery failed for {url}: {e.kind.value}")
            return []
