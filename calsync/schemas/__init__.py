from .calendar_events import (
    CalendarProvider,
    CaldavProvider,
    MappingStatus,
    BookingSyncStatus,
    SyncAction,
    SyncOutcome,
)

__all__ = [
    "CalendarProvider",
    "CaldavProvider",
    "MappingStatus",
    "BookingSyncStatus",
    "SyncAction",
    "SyncOutcome",
]
