# calsync/services/calendar/caldav/factory.py
"""CalDAV flavour detection and client construction."""
import logging
from typing import Optional
from urllib.parse import urlparse

from calsync.schemas.calendar_events import CaldavProvider
from calsync.services.calendar.caldav.client import CaldavClient
from calsync.services.calendar.caldav.discovery import (
    CalendarDiscovery,
    GenericCaldavDiscovery,
    IcloudDiscovery,
    NextcloudDiscovery,
)

logger = logging.getLogger(__name__)

ICLOUD_CALDAV_HOST = "caldav.icloud.com"
ICLOUD_EMAIL_DOMAINS = ("@icloud.com", "@me.com", "@mac.com")
NEXTCLOUD_HOST_HINTS = ("nextcloud", "owncloud")
NEXTCLOUD_PATH_HINT = "remote.php/dav"


def _parse(url: Optional[str]):
    if not url or not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url.strip())
        # .hostname can raise on malformed ports/brackets
        if not parsed.hostname:
            return None
    except ValueError:
        return None
    return parsed


def url_host_matches(url: Optional[str], host: str) -> bool:
    """Exact, case-insensitive hostname match; path, query and userinfo are ignored"""
    parsed = _parse(url)
    return parsed is not None and parsed.hostname == host.lower()


def url_host_contains(url: Optional[str], fragment: str) -> bool:
    parsed = _parse(url)
    return parsed is not None and fragment.lower() in parsed.hostname


def url_path_contains(url: Optional[str], fragment: str) -> bool:
    parsed = _parse(url)
    return parsed is not None and fragment.lower() in parsed.path.lower()


def detect_caldav_provider(username: Optional[str] = None, server_url: Optional[str] = None,
                           explicit: Optional[str] = None) -> CaldavProvider:
    """Pure classification of a CalDAV account; an explicit setting always wins"""
    if explicit:
        try:
            return CaldavProvider(explicit)
        except ValueError:
            logger.warning(f"Unknown CalDAV provider '{explicit}', falling back to detection")

    if username and username.strip().lower().endswith(ICLOUD_EMAIL_DOMAINS):
        return CaldavProvider.ICLOUD
    if url_host_matches(server_url, ICLOUD_CALDAV_HOST):
        return CaldavProvider.ICLOUD

    if any(url_host_contains(server_url, hint) for hint in NEXTCLOUD_HOST_HINTS):
        return CaldavProvider.NEXTCLOUD
    if url_path_contains(server_url, NEXTCLOUD_PATH_HINT):
        return CaldavProvider.NEXTCLOUD

    return CaldavProvider.GENERIC


def discovery_for(kind: CaldavProvider, server_url: Optional[str], username: Optional[str]) -> CalendarDiscovery:
    if kind == CaldavProvider.ICLOUD:
        return IcloudDiscovery(server_url, username)
    elif kind == CaldavProvider.NEXTCLOUD:
        return NextcloudDiscovery(server_url, username)
    else:
        return GenericCaldavDiscovery(server_url, username)


def build_caldav_client(calendar_connection, **kwargs) -> CaldavClient:
    kind = detect_caldav_provider(
        calendar_connection.caldav_username,
        calendar_connection.caldav_url,
        explicit=calendar_connection.caldav_provider,
    )
    discovery = discovery_for(kind, calendar_connection.caldav_url, calendar_connection.caldav_username)
    return CaldavClient(calendar_connection, discovery, **kwargs)
