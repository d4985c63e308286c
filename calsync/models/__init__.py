# calsync/models/__init__.py
from .base import Base
from .business import Business, StaffMember
from .booking import Booking
from .calendar_connection import CalendarConnection
from .calendar_event_mapping import CalendarEventMapping
from .calendar_sync_log import CalendarSyncLog
from .external_calendar_event import ExternalCalendarEvent

__all__ = [
    "Base",
    "Business",
    "StaffMember",
    "Booking",
    "CalendarConnection",
    "CalendarEventMapping",
    "CalendarSyncLog",
    "ExternalCalendarEvent",
]
