"""Unit tests for CaldavClient event operations and import."""
import logging
import re
from datetime import date

import responses

from calsync.schemas.calendar_events import CalendarProvider, SyncAction
from calsync.services.calendar.base import DiscoveryResult
from calsync.services.calendar.caldav import build_caldav_client
from calsync.services.calendar.errors import SyncErrorKind

CALENDAR_URL = "https://dav.example.com/cal/work/"
EVENT_URL = re.compile(r"https://dav\.example\.com/cal/work/.+\.ics")

CALENDARS = DiscoveryResult((CALENDAR_URL,))

GOOD_EVENT = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//EN
BEGIN:VEVENT
UID:{uid}
DTSTART:{start}
DTEND:{end}
SUMMARY:{summary}
END:VEVENT
END:VCALENDAR"""

MISSING_DTSTART = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//EN
BEGIN:VEVENT
UID:broken-1
DTEND:20240102T110000Z
SUMMARY:Broken
END:VEVENT
END:VCALENDAR"""


def report_body(*blocks):
    responses_xml = "".join(
        f"""
  <d:response>
    <d:href>/cal/work/event-{i}.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"{i}"</d:getetag>
        <c:calendar-data>{block}</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>"""
        for i, block in enumerate(blocks)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
        f"{responses_xml}</d:multistatus>"
    )


def caldav_client(make_connection, sleeps):
    connection = make_connection(CalendarProvider.CALDAV, caldav_url=CALENDAR_URL)
    return build_caldav_client(connection, sleep=sleeps.append)


class TestCreateEvent:

    @responses.activate
    def test_create_puts_ics_with_if_none_match(self, make_connection, booking, sleeps):
        responses.add(responses.PUT, EVENT_URL, status=201)
        client = caldav_client(make_connection, sleeps)

        result = client.create_event(booking, calendars=CALENDARS, event_uid="bizblasts-1-abc")

        assert result.success
        assert result.action == SyncAction.CREATE
        assert result.external_event_id == "bizblasts-1-abc"
        assert result.external_calendar_id == CALENDAR_URL

        request = responses.calls[0].request
        assert request.url == f"{CALENDAR_URL}bizblasts-1-abc.ics"
        assert request.headers["If-None-Match"] == "*"
        assert request.headers["Content-Type"].startswith("text/calendar")
        body = request.body.decode("utf-8")
        assert "UID:bizblasts-1-abc" in body
        assert "DTSTART:20240101T090000Z" in body
        assert "DTEND:20240101T100000Z" in body
        assert "SUMMARY:Haircut with Sam Carter" in body

    @responses.activate
    def test_uses_session_calendars_without_discovery(self, make_connection, booking, sleeps):
        responses.add(responses.PUT, EVENT_URL, status=201)
        client = caldav_client(make_connection, sleeps)

        client.create_event(booking, calendars=CALENDARS, event_uid="uid-1")
        client.create_event(booking, calendars=CALENDARS, event_uid="uid-2")

        assert [call.request.method for call in responses.calls] == ["PUT", "PUT"]

    @responses.activate
    def test_precondition_failed_falls_back_to_update(self, make_connection, booking, sleeps):
        responses.add(responses.PUT, EVENT_URL, status=412)
        responses.add(responses.PUT, EVENT_URL, status=204)
        client = caldav_client(make_connection, sleeps)

        result = client.create_event(booking, calendars=CALENDARS, event_uid="bizblasts-1-abc")

        assert result.success
        assert result.external_event_id == "bizblasts-1-abc"
        assert len(responses.calls) == 2
        assert responses.calls[0].request.headers["If-None-Match"] == "*"
        assert "If-None-Match" not in responses.calls[1].request.headers
        assert responses.calls[0].request.url == responses.calls[1].request.url

    @responses.activate
    def test_rate_limit_retries_then_fails(self, make_connection, booking, sleeps):
        responses.add(responses.PUT, EVENT_URL, status=429)
        client = caldav_client(make_connection, sleeps)

        result = client.create_event(booking, calendars=CALENDARS, event_uid="uid-1")

        assert not result.success
        assert result.error.kind == SyncErrorKind.RATE_LIMITED
        assert len(responses.calls) == 4
        assert sleeps == [1, 2, 4]
        # Every attempt targets the same resource
        assert len({call.request.url for call in responses.calls}) == 1

    def test_generated_uid_format(self, make_connection, booking, sleeps):
        client = caldav_client(make_connection, sleeps)
        uid = client.generate_event_uid(booking)
        assert re.fullmatch(rf"bizblasts-{booking.id}-[0-9a-f]{{16}}", uid)
        assert client.generate_event_uid(booking) != uid

    def test_invalid_booking_makes_no_request(self, make_connection, make_booking, sleeps):
        booking = make_booking(end_time=make_booking().start_time)
        client = caldav_client(make_connection, sleeps)

        result = client.create_event(booking, calendars=CALENDARS)

        assert result.error.kind == SyncErrorKind.INVALID_BOOKING

    def test_inactive_connection(self, make_connection, booking, sleeps):
        connection = make_connection(CalendarProvider.CALDAV, active=False)
        client = build_caldav_client(connection, sleep=sleeps.append)

        result = client.create_event(booking, calendars=CALENDARS)

        assert result.error.kind == SyncErrorKind.INACTIVE_CONNECTION

    def test_discovery_failure_is_reported(self, make_connection, booking, sleeps):
        client = caldav_client(make_connection, sleeps)
        failed = DiscoveryResult()

        result = client.create_event(booking, calendars=failed)

        assert result.error.kind == SyncErrorKind.DISCOVERY_FAILED


class TestUpdateAndDelete:

    @responses.activate
    def test_update_uses_stored_calendar(self, make_connection, booking, sleeps):
        responses.add(responses.PUT, f"{CALENDAR_URL}uid-1.ics", status=204)
        client = caldav_client(make_connection, sleeps)

        result = client.update_event(booking, "uid-1", calendar_id=CALENDAR_URL)

        assert result.success
        assert "If-None-Match" not in responses.calls[0].request.headers

    @responses.activate
    def test_delete_missing_event_is_success(self, make_connection, sleeps):
        responses.add(responses.DELETE, f"{CALENDAR_URL}uid-1.ics", status=404)
        client = caldav_client(make_connection, sleeps)

        result = client.delete_event("uid-1", calendar_id=CALENDAR_URL)

        assert result.success
        assert result.action == SyncAction.DELETE

    @responses.activate
    def test_delete_unauthorized(self, make_connection, sleeps):
        responses.add(responses.DELETE, f"{CALENDAR_URL}uid-1.ics", status=401)
        client = caldav_client(make_connection, sleeps)

        result = client.delete_event("uid-1", calendar_id=CALENDAR_URL)

        assert result.error.kind == SyncErrorKind.UNAUTHORIZED
        assert result.error.kind.deactivates_connection
        assert len(responses.calls) == 1


class TestImportEvents:

    @responses.activate
    def test_malformed_block_is_skipped(self, make_connection, sleeps, caplog):
        body = report_body(
            GOOD_EVENT.format(uid="evt-1", start="20240102T090000Z", end="20240102T100000Z", summary="Dentist"),
            MISSING_DTSTART,
            GOOD_EVENT.format(uid="evt-2", start="20240103T150000Z", end="20240103T160000Z", summary="Gym"),
        )
        responses.add("REPORT", CALENDAR_URL, body=body, status=207)
        client = caldav_client(make_connection, sleeps)

        with caplog.at_level(logging.WARNING, logger="calsync.services.calendar.caldav.ical"):
            result = client.import_events(date(2024, 1, 1), date(2024, 1, 7), calendars=CALENDARS)

        assert result.success
        assert [e.external_event_id for e in result.events] == ["evt-1", "evt-2"]
        assert result.events[0].summary == "Dentist"
        assert result.events[0].external_calendar_id == CALENDAR_URL
        assert len(result.errors) == 1
        parse_warnings = [r for r in caplog.records if r.name == "calsync.services.calendar.caldav.ical"]
        assert len(parse_warnings) == 1

        request = responses.calls[0].request
        assert request.headers["Depth"] == "1"
        assert b"time-range" in request.body

    @responses.activate
    def test_unauthorized_aborts_import(self, make_connection, sleeps):
        responses.add("REPORT", CALENDAR_URL, status=401)
        client = caldav_client(make_connection, sleeps)

        result = client.import_events(date(2024, 1, 1), date(2024, 1, 7), calendars=CALENDARS)

        assert not result.success
        assert result.error.kind == SyncErrorKind.UNAUTHORIZED

    @responses.activate
    def test_one_calendar_failing_keeps_the_others(self, make_connection, sleeps):
        other = "https://dav.example.com/cal/home/"
        responses.add("REPORT", CALENDAR_URL, status=403)
        responses.add(
            "REPORT",
            other,
            status=207,
            body=report_body(
                GOOD_EVENT.format(uid="evt-9", start="20240102T090000Z", end="20240102T100000Z", summary="Lunch")
            ),
        )
        client = caldav_client(make_connection, sleeps)

        result = client.import_events(
            date(2024, 1, 1), date(2024, 1, 7), calendars=DiscoveryResult((CALENDAR_URL, other))
        )

        assert result.success
        assert [e.external_event_id for e in result.events] == ["evt-9"]
        assert len(result.errors) == 1


class TestConnectionTest:

    @responses.activate
    def test_success(self, make_connection, sleeps):
        responses.add(
            "PROPFIND",
            CALENDAR_URL,
            status=207,
            body="""<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/cal/work/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection/><c:calendar/></d:resourcetype>
        <c:supported-calendar-component-set><c:comp name="VEVENT"/></c:supported-calendar-component-set>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>""",
        )
        client = caldav_client(make_connection, sleeps)

        result = client.test_connection()

        assert result["success"]
        assert result["calendar_urls"] == [CALENDAR_URL]
        assert "1 calendars found" in result["message"]

    @responses.activate
    def test_failure(self, make_connection, sleeps):
        responses.add("PROPFIND", CALENDAR_URL, status=401)
        client = caldav_client(make_connection, sleeps)

        result = client.test_connection()

        assert not result["success"]
        assert result["error_kind"] == "unauthorized"
