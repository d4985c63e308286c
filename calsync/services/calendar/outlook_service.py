# calsync/services/calendar/outlook_service.py
import logging
from typing import Optional

import requests

from calsync.schemas.calendar_events import CalendarProvider, SyncAction
from calsync.services.calendar.base import (
    PRIMARY_CALENDAR_ID,
    ImportedEvent,
    ImportResult,
    OAuthSyncProvider,
    SyncError,
    SyncResult,
)
from calsync.services.calendar.errors import CalendarSyncError, SyncErrorKind, classify_http_status
from calsync.utils.timeutils import as_utc, day_window, isoformat_z, parse_iso_datetime

logger = logging.getLogger(__name__)

GRAPH_ENDPOINT = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30
REMINDER_MINUTES = 60


class MicrosoftClient(OAuthSyncProvider):
    """Microsoft Graph client for the signed-in user's default calendar"""

    provider_name = CalendarProvider.MICROSOFT.value

    def __init__(self, calendar_connection, *, session: Optional[requests.Session] = None, **kwargs):
        super().__init__(calendar_connection, **kwargs)
        self.session = session or requests.Session()

    def request(self, method: str, path_or_url: str, **kwargs) -> requests.Response:
        url = path_or_url if path_or_url.startswith("http") else f"{GRAPH_ENDPOINT}{path_or_url}"
        headers = {
            "Authorization": f"Bearer {self.calendar_connection.access_token}",
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        try:
            response = self.session.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.Timeout:
            raise CalendarSyncError(SyncErrorKind.TIMEOUT)
        except requests.ConnectionError as e:
            logger.warning(f"Microsoft Graph connection error: {e}")
            raise CalendarSyncError(SyncErrorKind.SERVER_ERROR)
        except requests.RequestException as e:
            logger.error(f"Microsoft Graph request failed: {e}")
            raise CalendarSyncError(SyncErrorKind.UNKNOWN)

        if response.status_code >= 400:
            kind = classify_http_status(response.status_code)
            logger.warning(f"Microsoft Graph {method} {url} returned {response.status_code}: {response.text[:500]}")
            raise CalendarSyncError(kind, status_code=response.status_code)
        return response

    # ---- payloads ----

    @staticmethod
    def graph_time(value) -> dict:
        return {"dateTime": as_utc(value).strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"}

    def build_event(self, booking) -> dict:
        event = {
            "subject": self.booking_summary(booking),
            "body": {"contentType": "text", "content": self.booking_description(booking)},
            "start": self.graph_time(booking.start_time),
            "end": self.graph_time(booking.end_time),
            "location": {"displayName": self.booking_location(booking)},
            "isReminderOn": True,
            "reminderMinutesBeforeStart": REMINDER_MINUTES,
            "attendees": [],
        }
        for attendee in self.booking_attendees(booking):
            email_address = {"address": attendee["email"], "name": attendee["display_name"] or attendee["email"]}
            if attendee["organizer"]:
                event["organizer"] = {"emailAddress": email_address}
            event["attendees"].append({"emailAddress": email_address, "type": "required"})
        return event

    @staticmethod
    def parse_event_time(value: dict):
        # calendarView is requested with outlook.timezone="UTC"
        return parse_iso_datetime(value["dateTime"])

    # ---- SyncProvider ----

    def create_event(self, booking, *, calendars=None, event_uid=None) -> SyncResult:
        error = self.precheck(booking)
        if error:
            return SyncResult.failed(SyncAction.CREATE, error)

        event = self.build_event(booking)

        def attempt():
            created = self.request("POST", "/me/events", json=event).json()
            return SyncResult.ok(SyncAction.CREATE, created["id"], PRIMARY_CALENDAR_ID)

        return self._run(SyncAction.CREATE, attempt)

    def update_event(self, booking, external_event_id, *, calendars=None, calendar_id=None) -> SyncResult:
        error = self.precheck(booking)
        if error:
            return SyncResult.failed(SyncAction.UPDATE, error)

        event = self.build_event(booking)

        def attempt():
            self.request("PATCH", f"/me/events/{external_event_id}", json=event)
            return SyncResult.ok(SyncAction.UPDATE, external_event_id, calendar_id or PRIMARY_CALENDAR_ID)

        return self._run(SyncAction.UPDATE, attempt)

    def delete_event(self, external_event_id, *, calendars=None, calendar_id=None) -> SyncResult:
        error = self.precheck()
        if error:
            return SyncResult.failed(SyncAction.DELETE, error)

        def attempt():
            try:
                self.request("DELETE", f"/me/events/{external_event_id}")
            except CalendarSyncError as e:
                if e.kind is not SyncErrorKind.NOT_FOUND:
                    raise
            return SyncResult.ok(SyncAction.DELETE, external_event_id, calendar_id or PRIMARY_CALENDAR_ID)

        return self._run(SyncAction.DELETE, attempt)

    def import_events(self, start_date, end_date, *, calendars=None) -> ImportResult:
        error = self.precheck()
        if error:
            return ImportResult(error=error)

        window_start, window_end = day_window(start_date, end_date, self.business_timezone())
        url = f"{GRAPH_ENDPOINT}/me/calendarView"
        params = {
            "startDateTime": isoformat_z(window_start),
            "endDateTime": isoformat_z(window_end),
            "$select": "id,subject,start,end,showAs,isCancelled",
            "$top": 100,
        }
        headers = {"Prefer": 'outlook.timezone="UTC"'}
        result = ImportResult()

        while url:
            try:
                response = self.retrying(lambda: self.request("GET", url, params=params, headers=dict(headers)))
            except CalendarSyncError as e:
                self._log_error(SyncAction.IMPORT, e)
                result.error = SyncError.from_exception(e)
                return result

            page = response.json()
            for item in page.get("value", []):
                if item.get("isCancelled") or item.get("showAs") == "free":
                    continue
                try:
                    result.events.append(ImportedEvent(
                        external_event_id=item["id"],
                        external_calendar_id=PRIMARY_CALENDAR_ID,
                        starts_at=self.parse_event_time(item["start"]),
                        ends_at=self.parse_event_time(item["end"]),
                        summary=item.get("subject") or "Untitled Event",
                    ))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed Graph event {item.get('id')}: {e}")
                    result.errors.append(f"Malformed event {item.get('id')}: {e}")

            # nextLink already carries the query string
            url = page.get("@odata.nextLink")
            params = None

        logger.info(f"Imported {result.imported_count} Outlook event(s) for connection {self.calendar_connection.id}")
        return result
