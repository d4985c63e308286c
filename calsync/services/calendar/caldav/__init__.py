from .client import CaldavClient
from .discovery import CalendarDiscovery, GenericCaldavDiscovery, IcloudDiscovery, NextcloudDiscovery
from .factory import build_caldav_client, detect_caldav_provider

__all__ = [
    "CaldavClient",
    "CalendarDiscovery",
    "IcloudDiscovery",
    "NextcloudDiscovery",
    "GenericCaldavDiscovery",
    "build_caldav_client",
    "detect_caldav_provider",
]
