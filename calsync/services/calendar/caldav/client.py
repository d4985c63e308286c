# calsync/services/calendar/caldav/client.py
import logging
import secrets
from functools import partial
from typing import Optional
from urllib.parse import quote

import requests

from calsync.config.settings import get_settings
from calsync.schemas.calendar_events import CalendarProvider, SyncAction
from calsync.services.calendar.base import (
    DiscoveryResult,
    ImportResult,
    SyncError,
    SyncProvider,
    SyncResult,
)
from calsync.services.calendar.caldav.discovery import CalendarDiscovery
from calsync.services.calendar.caldav.ical import build_event_ics, parse_report
from calsync.services.calendar.caldav.multistatus import calendar_query_xml
from calsync.services.calendar.errors import CalendarSyncError, SyncErrorKind, classify_http_status
from calsync.utils.timeutils import day_window

logger = logging.getLogger(__name__)

XML_CONTENT_TYPE = "application/xml; charset=utf-8"
ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"

CALDAV_STATUS_KINDS = {
    405: SyncErrorKind.METHOD_NOT_SUPPORTED,
    409: SyncErrorKind.CONFLICT,
    412: SyncErrorKind.PRECONDITION_FAILED,
}


class CaldavClient(SyncProvider):
    """SyncProvider over WebDAV/CalDAV with basic auth.

    Discovery is delegated to a CalendarDiscovery strategy picked by
    ``calsync.services.calendar.caldav.factory``.
    """

    provider_name = CalendarProvider.CALDAV.value

    def __init__(self, calendar_connection, discovery: CalendarDiscovery, *,
                 session: Optional[requests.Session] = None, timeout: Optional[float] = None, **kwargs):
        super().__init__(calendar_connection, **kwargs)
        settings = get_settings()
        self.discovery = discovery
        self.session = session or requests.Session()
        self.timeout = timeout or settings.CALDAV_TIMEOUT_SECONDS
        self.user_agent = f"{settings.CALENDAR_USER_AGENT} ({discovery.label})"

    @property
    def username(self):
        return self.calendar_connection.caldav_username

    @property
    def password(self):
        return self.calendar_connection.caldav_password

    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    # ---- transport ----

    def request(self, method: str, url: str, body=None, headers: Optional[dict] = None) -> requests.Response:
        request_headers = {"User-Agent": self.user_agent, **self.discovery.extra_headers, **(headers or {})}
        if isinstance(body, str):
            body = body.encode("utf-8")
        try:
            response = self.session.request(
                method,
                url,
                data=body,
                headers=request_headers,
                auth=(self.username, self.password),
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning(f"CalDAV {method} {url} timed out after {self.timeout}s")
            raise CalendarSyncError(SyncErrorKind.TIMEOUT)
        except requests.ConnectionError as e:
            logger.warning(f"CalDAV {method} {url} connection error: {e}")
            raise CalendarSyncError(SyncErrorKind.SERVER_ERROR)
        except requests.RequestException as e:
            logger.error(f"CalDAV {method} {url} failed: {e}")
            raise CalendarSyncError(SyncErrorKind.UNKNOWN)

        if response.status_code >= 400:
            kind = self.classify_response(response)
            logger.warning(f"CalDAV {method} {url} returned {response.status_code} ({kind.value})")
            raise CalendarSyncError(kind, status_code=response.status_code)
        return response

    def classify_response(self, response) -> SyncErrorKind:
        return (
            self.discovery.classify_error(response)
            or CALDAV_STATUS_KINDS.get(response.status_code)
            or classify_http_status(response.status_code)
        )

    def propfind(self, url: str, body: str, depth: str = "1") -> requests.Response:
        return self.request("PROPFIND", url, body, {"Depth": depth, "Content-Type": XML_CONTENT_TYPE})

    def report(self, url: str, body: str) -> requests.Response:
        return self.request("REPORT", url, body, {"Depth": "1", "Content-Type": XML_CONTENT_TYPE})

    def put_event(self, event_url: str, ics: str, create: bool) -> requests.Response:
        headers = {"Content-Type": ICS_CONTENT_TYPE}
        if create:
            # Never clobber an event that already exists at this URL
            headers["If-None-Match"] = "*"
        return self.request("PUT", event_url, ics, headers)

    @staticmethod
    def event_url(calendar_url: str, event_uid: str) -> str:
        return f"{calendar_url.rstrip('/')}/{quote(event_uid)}.ics"

    # ---- discovery ----

    def discover(self) -> DiscoveryResult:
        if not self.has_credentials():
            return DiscoveryResult(error=SyncError(SyncErrorKind.MISSING_CREDENTIALS,
                                                   "CalDAV username and password are required"))
        try:
            urls = self.discovery.discover(self)
        except CalendarSyncError as e:
            logger.error(f"Calendar discovery failed for connection {self.calendar_connection.id}: {e.kind.value}")
            return DiscoveryResult(error=SyncError.from_exception(e))
        except Exception as e:
            logger.exception(f"Unexpected discovery error for connection {self.calendar_connection.id}")
            return DiscoveryResult(error=SyncError(SyncErrorKind.DISCOVERY_FAILED, f"Calendar discovery failed: {e}"))

        if not urls:
            logger.warning(f"No event calendars found for connection {self.calendar_connection.id}")
            return DiscoveryResult(error=SyncError(SyncErrorKind.DISCOVERY_FAILED,
                                                   "No writable calendars were found for this account."))
        return DiscoveryResult(tuple(urls))

    def test_connection(self) -> dict:
        calendars = self.discover()
        if calendars:
            return {
                "success": True,
                "message": f"Successfully connected to {self.calendar_connection.provider_display_name} "
                           f"({len(calendars)} calendars found)",
                "calendar_urls": list(calendars.calendar_urls),
            }
        return {
            "success": False,
            "message": calendars.error.message,
            "error_kind": calendars.error.kind.value,
        }

    # ---- SyncProvider ----

    def validate_connection(self) -> Optional[SyncError]:
        error = super().validate_connection()
        if error:
            return error
        if not self.has_credentials():
            return SyncError(SyncErrorKind.MISSING_CREDENTIALS, "CalDAV username and password are required")
        return None

    def refresh_access_token(self) -> bool:
        # Basic auth, nothing to refresh
        return True

    def generate_event_uid(self, booking) -> str:
        return f"bizblasts-{booking.id}-{secrets.token_hex(8)}"

    def create_event(self, booking, *, calendars=None, event_uid=None) -> SyncResult:
        error = self.precheck(booking)
        if error:
            return SyncResult.failed(SyncAction.CREATE, error)

        calendars = self.session_calendars(calendars)
        if not calendars:
            return SyncResult.failed(SyncAction.CREATE, self.discovery_failure(calendars))

        calendar_url = calendars.primary()
        uid = event_uid or self.generate_event_uid(booking)
        ics = build_event_ics(uid, booking.start_time, booking.end_time, self.booking_summary(booking))
        event_url = self.event_url(calendar_url, uid)

        def attempt():
            try:
                self.put_event(event_url, ics, create=True)
            except CalendarSyncError as e:
                if e.kind is not SyncErrorKind.PRECONDITION_FAILED:
                    raise
                # An earlier attempt already stored this UID
                logger.info(f"Event {uid} already exists at {calendar_url}, updating instead")
                self.put_event(event_url, ics, create=False)
            return SyncResult.ok(SyncAction.CREATE, uid, calendar_url)

        return self._run(SyncAction.CREATE, attempt)

    def update_event(self, booking, external_event_id, *, calendars=None, calendar_id=None) -> SyncResult:
        error = self.precheck(booking)
        if error:
            return SyncResult.failed(SyncAction.UPDATE, error)

        calendar_url = calendar_id
        if not calendar_url:
            calendars = self.session_calendars(calendars)
            if not calendars:
                return SyncResult.failed(SyncAction.UPDATE, self.discovery_failure(calendars))
            calendar_url = calendars.primary()

        ics = build_event_ics(external_event_id, booking.start_time, booking.end_time, self.booking_summary(booking))
        event_url = self.event_url(calendar_url, external_event_id)

        def attempt():
            self.put_event(event_url, ics, create=False)
            return SyncResult.ok(SyncAction.UPDATE, external_event_id, calendar_url)

        return self._run(SyncAction.UPDATE, attempt)

    def delete_event(self, external_event_id, *, calendars=None, calendar_id=None) -> SyncResult:
        error = self.precheck()
        if error:
            return SyncResult.failed(SyncAction.DELETE, error)

        calendar_url = calendar_id
        if not calendar_url:
            calendars = self.session_calendars(calendars)
            if not calendars:
                return SyncResult.failed(SyncAction.DELETE, self.discovery_failure(calendars))
            calendar_url = calendars.primary()

        event_url = self.event_url(calendar_url, external_event_id)

        def attempt():
            try:
                self.request("DELETE", event_url)
            except CalendarSyncError as e:
                if e.kind is not SyncErrorKind.NOT_FOUND:
                    raise
                logger.info(f"Event {external_event_id} already gone from {calendar_url}")
            return SyncResult.ok(SyncAction.DELETE, external_event_id, calendar_url)

        return self._run(SyncAction.DELETE, attempt)

    def import_events(self, start_date, end_date, *, calendars=None) -> ImportResult:
        error = self.precheck()
        if error:
            return ImportResult(error=error)

        calendars = self.session_calendars(calendars)
        if not calendars:
            return ImportResult(error=self.discovery_failure(calendars))

        window_start, window_end = day_window(start_date, end_date, self.business_timezone())
        query = calendar_query_xml(window_start, window_end)

        result = ImportResult()
        for calendar_url in calendars.calendar_urls:
            try:
                response = self.retrying(partial(self.report, calendar_url, query))
            except CalendarSyncError as e:
                if e.kind.deactivates_connection:
                    result.error = SyncError.from_exception(e)
                    return result
                logger.warning(f"Failed to fetch events from {calendar_url}: {e.kind.value}")
                result.errors.append(f"Failed to fetch events from {calendar_url}: {e.message}")
                continue

            events, errors = parse_report(response.content, calendar_url)
            result.events.extend(events)
            result.errors.extend(errors)

        logger.info(
            f"Imported {result.imported_count} event(s) from {len(calendars)} calendar(s) "
            f"for connection {self.calendar_connection.id}"
        )
        return result
