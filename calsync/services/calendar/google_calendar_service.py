# calsync/services/calendar/google_calendar_service.py
import logging
from datetime import date
from typing import Optional

from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.config.settings import get_settings
from calsync.models.calendar_connection import GOOGLE_CALENDAR_SCOPE
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
from calsync.utils.timeutils import as_utc, coerce_datetime, day_window, get_zone, isoformat_z, parse_iso_datetime

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Fixed reminder defaults
GOOGLE_REMINDERS = {
    "useDefault": False,
    "overrides": [
        {"method": "email", "minutes": 60},
        {"method": "popup", "minutes": 15},
    ],
}


def google_error(e: HttpError) -> CalendarSyncError:
    status = int(e.resp.status)
    kind = classify_http_status(status)
    # Google reports quota exhaustion as 403
    if status == 403 and b"ateLimitExceeded" in (e.content or b""):
        kind = SyncErrorKind.RATE_LIMITED
    return CalendarSyncError(kind, status_code=status)


class GoogleClient(OAuthSyncProvider):
    """Google Calendar v3 client writing to the account's primary calendar"""

    provider_name = CalendarProvider.GOOGLE.value

    def __init__(self, calendar_connection, *, service=None, **kwargs):
        super().__init__(calendar_connection, **kwargs)
        self._service = service

    def credentials(self) -> Credentials:
        settings = get_settings()
        return Credentials(
            token=self.calendar_connection.access_token,
            refresh_token=self.calendar_connection.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            scopes=[GOOGLE_CALENDAR_SCOPE],
        )

    @property
    def service(self):
        # Built lazily so a token refreshed during validation is picked up
        if self._service is None:
            self._service = build("calendar", "v3", credentials=self.credentials(), cache_discovery=False)
        return self._service

    def execute(self, request):
        try:
            return request.execute()
        except HttpError as e:
            error = google_error(e)
            logger.warning(f"Google Calendar API returned {error.status_code} ({error.kind.value})")
            raise error
        except RefreshError as e:
            logger.warning(f"Google token refresh rejected for connection {self.calendar_connection.id}: {e}")
            raise CalendarSyncError(SyncErrorKind.EXPIRED_TOKEN)
        except TimeoutError:
            raise CalendarSyncError(SyncErrorKind.TIMEOUT)
        except (TransportError, ConnectionError) as e:
            logger.warning(f"Google Calendar transport error: {e}")
            raise CalendarSyncError(SyncErrorKind.SERVER_ERROR)

    # ---- payloads ----

    def build_event(self, booking) -> dict:
        time_zone = self.business_timezone(booking)
        zone = get_zone(time_zone)
        attendees = []
        for attendee in self.booking_attendees(booking):
            entry = {
                "email": attendee["email"],
                "displayName": attendee["display_name"],
                "responseStatus": attendee["response_status"],
            }
            if attendee["organizer"]:
                entry["organizer"] = True
            attendees.append(entry)

        return {
            "summary": self.booking_summary(booking),
            "description": self.booking_description(booking),
            "location": self.booking_location(booking),
            "start": {"dateTime": as_utc(booking.start_time).astimezone(zone).isoformat(), "timeZone": time_zone},
            "end": {"dateTime": as_utc(booking.end_time).astimezone(zone).isoformat(), "timeZone": time_zone},
            "attendees": attendees,
            "reminders": GOOGLE_REMINDERS,
        }

    @staticmethod
    def parse_event_time(value: dict):
        if value.get("dateTime"):
            return parse_iso_datetime(value["dateTime"])
        if value.get("date"):
            return coerce_datetime(date.fromisoformat(value["date"]))
        raise ValueError("event time has neither dateTime nor date")

    # ---- SyncProvider ----

    def create_event(self, booking, *, calendars=None, event_uid=None) -> SyncResult:
        error = self.precheck(booking)
        if error:
            return SyncResult.failed(SyncAction.CREATE, error)

        event = self.build_event(booking)

        def attempt():
            created = self.execute(
                self.service.events().insert(calendarId=PRIMARY_CALENDAR_ID, body=event, sendUpdates="none")
            )
            return SyncResult.ok(SyncAction.CREATE, created["id"], PRIMARY_CALENDAR_ID)

        return self._run(SyncAction.CREATE, attempt)

    def update_event(self, booking, external_event_id, *, calendars=None, calendar_id=None) -> SyncResult:
        error = self.precheck(booking)
        if error:
            return SyncResult.failed(SyncAction.UPDATE, error)

        event = self.build_event(booking)
        calendar_id = calendar_id or PRIMARY_CALENDAR_ID

        def attempt():
            self.execute(
                self.service.events().patch(calendarId=calendar_id, eventId=external_event_id, body=event)
            )
            return SyncResult.ok(SyncAction.UPDATE, external_event_id, calendar_id)

        return self._run(SyncAction.UPDATE, attempt)

    def delete_event(self, external_event_id, *, calendars=None, calendar_id=None) -> SyncResult:
        error = self.precheck()
        if error:
            return SyncResult.failed(SyncAction.DELETE, error)

        calendar_id = calendar_id or PRIMARY_CALENDAR_ID

        def attempt():
            try:
                self.execute(self.service.events().delete(calendarId=calendar_id, eventId=external_event_id))
            except CalendarSyncError as e:
                # 410 Gone: already deleted
                if e.status_code not in (404, 410):
                    raise
            return SyncResult.ok(SyncAction.DELETE, external_event_id, calendar_id)

        return self._run(SyncAction.DELETE, attempt)

    def import_events(self, start_date, end_date, *, calendars=None) -> ImportResult:
        error = self.precheck()
        if error:
            return ImportResult(error=error)

        window_start, window_end = day_window(start_date, end_date, self.business_timezone())
        result = ImportResult()
        page_token: Optional[str] = None

        while True:
            request = self.service.events().list(
                calendarId=PRIMARY_CALENDAR_ID,
                timeMin=isoformat_z(window_start),
                timeMax=isoformat_z(window_end),
                singleEvents=True,
                orderBy="startTime",
                pageToken=page_token,
            )
            try:
                page = self.retrying(lambda: self.execute(request))
            except CalendarSyncError as e:
                self._log_error(SyncAction.IMPORT, e)
                result.error = SyncError.from_exception(e)
                return result

            for item in page.get("items", []):
                if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                    continue
                try:
                    result.events.append(ImportedEvent(
                        external_event_id=item["id"],
                        external_calendar_id=PRIMARY_CALENDAR_ID,
                        starts_at=self.parse_event_time(item["start"]),
                        ends_at=self.parse_event_time(item["end"]),
                        summary=item.get("summary") or "Untitled Event",
                    ))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed Google event {item.get('id')}: {e}")
                    result.errors.append(f"Malformed event {item.get('id')}: {e}")

            page_token = page.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Imported {result.imported_count} Google event(s) for connection {self.calendar_connection.id}")
        return result
