# calsync/services/calendar/base.py
"""
Provider contract shared by Google, Microsoft and CalDAV clients.

Every public operation returns a typed result; CalendarSyncError and
transport exceptions stay inside the client.
"""
import abc
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from calsync.config.settings import get_settings
from calsync.schemas.calendar_events import SyncAction, SyncOutcome
from calsync.services.calendar.errors import CalendarSyncError, SyncErrorKind, is_retryable
from calsync.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR_ID = "primary"

# Preferred calendar path segments for new events, in order
PREFERRED_CALENDAR_NAMES = ["work", "calendar", "personal", "main", "default", "home"]


@dataclass(frozen=True)
class SyncError:
    kind: SyncErrorKind
    message: str
    status_code: Optional[int] = None

    @classmethod
    def from_exception(cls, exc: CalendarSyncError) -> "SyncError":
        return cls(kind=exc.kind, message=exc.message, status_code=exc.status_code)


@dataclass(frozen=True)
class SyncLogEntry:
    """Audit record produced by an operation and persisted by the coordinator"""
    action: SyncAction
    outcome: SyncOutcome
    message: Optional[str] = None
    details: dict = field(default_factory=dict)


@dataclass
class SyncResult:
    action: SyncAction
    success: bool
    external_event_id: Optional[str] = None
    external_calendar_id: Optional[str] = None
    error: Optional[SyncError] = None

    @classmethod
    def ok(cls, action, external_event_id=None, external_calendar_id=None) -> "SyncResult":
        return cls(action=action, success=True, external_event_id=external_event_id,
                   external_calendar_id=external_calendar_id)

    @classmethod
    def failed(cls, action, error: SyncError) -> "SyncResult":
        return cls(action=action, success=False, error=error)

    def log_entry(self, **details) -> SyncLogEntry:
        if self.success:
            return SyncLogEntry(self.action, SyncOutcome.SUCCESS, f"Event {self.action.value} succeeded",
                                {"external_event_id": self.external_event_id, **details})
        return SyncLogEntry(self.action, SyncOutcome.FAILURE, self.error.message,
                            {"error_kind": self.error.kind.value, "status_code": self.error.status_code,
                             **details})


@dataclass(frozen=True)
class ImportedEvent:
    external_event_id: str
    external_calendar_id: str
    starts_at: datetime
    ends_at: datetime
    summary: str = "Untitled Event"


@dataclass
class ImportResult:
    events: List[ImportedEvent] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error: Optional[SyncError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def imported_count(self) -> int:
        return len(self.events)

    def log_entry(self, **details) -> SyncLogEntry:
        if self.success:
            return SyncLogEntry(SyncAction.IMPORT, SyncOutcome.SUCCESS,
                                f"Imported {self.imported_count} event(s)",
                                {"skipped": len(self.errors), **details})
        return SyncLogEntry(SyncAction.IMPORT, SyncOutcome.FAILURE, self.error.message,
                            {"error_kind": self.error.kind.value, **details})


@dataclass(frozen=True)
class DiscoveryResult:
    """Ordered writable, VEVENT-capable calendars for one sync session"""
    calendar_urls: Tuple[str, ...] = ()
    error: Optional[SyncError] = None

    def __bool__(self):
        return bool(self.calendar_urls)

    def __len__(self):
        return len(self.calendar_urls)

    def primary(self) -> Optional[str]:
        return select_primary_calendar(list(self.calendar_urls))


def select_primary_calendar(calendar_urls: List[str]) -> Optional[str]:
    """First URL whose path has a preferred segment, else the first discovered"""
    if not calendar_urls:
        return None
    if len(calendar_urls) == 1:
        return calendar_urls[0]
    for name in PREFERRED_CALENDAR_NAMES:
        for url in calendar_urls:
            if f"/{name}/" in url.lower():
                return url
    return calendar_urls[0]


def retry_with_backoff(fn: Callable, *, sleep: Callable[[float], None] = time.sleep,
                       max_retries: int = 3, base_delay: float = 1):
    """Call fn, retrying retryable CalendarSyncErrors.

    Delays are base_delay * 2**n (1s, 2s, 4s by default) for at most
    max_retries retries, so fn runs at most max_retries + 1 times.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    return retrying(fn)


class SyncProvider(abc.ABC):
    """Common interface for every calendar backend.

    ``calendars`` is the DiscoveryResult the caller obtained from
    :meth:`discover` and holds for the sync session; clients never cache it.
    """

    provider_name = None

    def __init__(self, calendar_connection, *, sleep: Callable[[float], None] = time.sleep,
                 max_retries: Optional[int] = None, base_delay: Optional[float] = None):
        settings = get_settings()
        self.calendar_connection = calendar_connection
        self.sleep = sleep
        self.max_retries = settings.CALENDAR_SYNC_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.CALENDAR_RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.refresh_margin_seconds = settings.TOKEN_REFRESH_MARGIN_SECONDS

    # ---- contract ----

    @abc.abstractmethod
    def create_event(self, booking, *, calendars: Optional[DiscoveryResult] = None,
                     event_uid: Optional[str] = None) -> SyncResult:
        raise NotImplementedError

    @abc.abstractmethod
    def update_event(self, booking, external_event_id: str, *, calendars: Optional[DiscoveryResult] = None,
                     calendar_id: Optional[str] = None) -> SyncResult:
        raise NotImplementedError

    @abc.abstractmethod
    def delete_event(self, external_event_id: str, *, calendars: Optional[DiscoveryResult] = None,
                     calendar_id: Optional[str] = None) -> SyncResult:
        raise NotImplementedError

    @abc.abstractmethod
    def import_events(self, start_date, end_date, *,
                      calendars: Optional[DiscoveryResult] = None) -> ImportResult:
        raise NotImplementedError

    @abc.abstractmethod
    def refresh_access_token(self) -> bool:
        raise NotImplementedError

    def discover(self) -> DiscoveryResult:
        """REST providers always write to the account's primary calendar"""
        return DiscoveryResult((PRIMARY_CALENDAR_ID,))

    def generate_event_uid(self, booking) -> Optional[str]:
        """Client-chosen event id, or None when the provider assigns one"""
        return None

    # ---- shared helpers ----

    def session_calendars(self, calendars: Optional[DiscoveryResult]) -> DiscoveryResult:
        return calendars if calendars is not None else self.discover()

    @staticmethod
    def discovery_failure(calendars: DiscoveryResult) -> SyncError:
        return calendars.error or SyncError(SyncErrorKind.DISCOVERY_FAILED,
                                            "No writable calendars were found for this account.")

    def retrying(self, fn: Callable):
        return retry_with_backoff(fn, sleep=self.sleep, max_retries=self.max_retries, base_delay=self.base_delay)

    def _run(self, action: SyncAction, fn: Callable[[], SyncResult]) -> SyncResult:
        try:
            return self.retrying(fn)
        except CalendarSyncError as exc:
            self._log_error(action, exc)
            return SyncResult.failed(action, SyncError.from_exception(exc))
        except Exception as exc:
            logger.exception(f"[{self.__class__.__name__}] Unexpected error during {action.value}")
            return SyncResult.failed(action, SyncError(SyncErrorKind.UNKNOWN, f"Calendar sync failed: {exc}"))

    def _log_error(self, action: SyncAction, exc: CalendarSyncError):
        logger.error(
            f"[{self.__class__.__name__}] {action.value} failed for connection "
            f"{self.calendar_connection.id}: {exc.kind.value}: {exc.message}"
        )

    def validate_booking(self, booking) -> Optional[SyncError]:
        if booking is None or booking.start_time is None or booking.end_time is None:
            return SyncError(SyncErrorKind.INVALID_BOOKING, "Booking must have start and end times")
        if as_utc(booking.start_time) >= as_utc(booking.end_time):
            return SyncError(SyncErrorKind.INVALID_BOOKING, "Start time must be before end time")
        return None

    def validate_connection(self) -> Optional[SyncError]:
        connection = self.calendar_connection
        if not connection.active:
            return SyncError(SyncErrorKind.INACTIVE_CONNECTION, "Calendar connection is not active")

        if connection.is_oauth_provider and connection.token_expired(margin_seconds=self.refresh_margin_seconds):
            refreshed = connection.needs_refresh() and self.refresh_access_token()
            if not refreshed and connection.token_expired():
                return SyncError(SyncErrorKind.EXPIRED_TOKEN, "Calendar authorization expired. Please reconnect.")
        return None

    def precheck(self, booking=None) -> Optional[SyncError]:
        if booking is not None:
            error = self.validate_booking(booking)
            if error:
                return error
        return self.validate_connection()

    # ---- booking formatting ----

    def business_timezone(self, booking=None) -> str:
        if booking is not None:
            return booking.business_time_zone
        business = getattr(self.calendar_connection, "business", None)
        return (business.time_zone if business else None) or "UTC"

    @staticmethod
    def booking_summary(booking) -> str:
        parts = []
        if booking.service_name:
            parts.append(booking.service_name)
        if booking.customer_full_name:
            parts.append(f"with {booking.customer_full_name}")
        return " ".join(parts) or "Booking"

    @staticmethod
    def booking_description(booking) -> str:
        lines = []
        if booking.service_name:
            lines.append(f"Service: {booking.service_name}")
        if booking.customer_full_name:
            lines.append(f"Customer: {booking.customer_full_name}")
        if booking.customer_phone:
            lines.append(f"Phone: {booking.customer_phone}")
        if booking.customer_email:
            lines.append(f"Email: {booking.customer_email}")
        if booking.notes:
            lines.append(f"Notes: {booking.notes}")
        lines.append(f"Booking ID: {booking.id}")
        return "\n".join(lines)

    @staticmethod
    def booking_location(booking) -> str:
        return booking.business_address or ""

    def booking_attendees(self, booking) -> List[dict]:
        attendees = []
        if booking.customer_email:
            attendees.append({
                "email": booking.customer_email,
                "display_name": booking.customer_full_name,
                "response_status": "accepted",
                "organizer": False,
            })
        staff_member = booking.staff_member or getattr(self.calendar_connection, "staff_member", None)
        if staff_member is not None and staff_member.email:
            attendees.append({
                "email": staff_member.email,
                "display_name": staff_member.name,
                "response_status": "accepted",
                "organizer": True,
            })
        return attendees

    @staticmethod
    def now() -> datetime:
        return utcnow()


class OAuthSyncProvider(SyncProvider):
    """Base for REST providers whose access tokens are refreshed by OAuthHandler"""

    def __init__(self, calendar_connection, *, token_refresher: Optional[Callable] = None, **kwargs):
        super().__init__(calendar_connection, **kwargs)
        self.token_refresher = token_refresher

    def refresh_access_token(self) -> bool:
        if self.token_refresher is None:
            logger.warning(f"No token refresher configured for connection {self.calendar_connection.id}")
            return False
        return bool(self.token_refresher(self.calendar_connection))
