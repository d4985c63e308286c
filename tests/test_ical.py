"""Unit tests for iCalendar building and REPORT parsing."""
from datetime import datetime, timedelta, timezone

from icalendar import Calendar

from calsync.services.calendar.caldav.ical import (
    build_event_ics,
    extract_calendar_blocks,
    parse_calendar_block,
    parse_report,
    scan_calendar_blocks,
)

BLOCK = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nUID:{uid}\nDTSTART:20240102T090000Z\nDTEND:20240102T100000Z\nEND:VEVENT\nEND:VCALENDAR"


class TestBuildEventIcs:

    def test_minimal_event_in_utc(self):
        start = datetime(2024, 3, 10, 9, 30, tzinfo=timezone(timedelta(hours=-5)))
        ics = build_event_ics("uid-1", start, start + timedelta(hours=1), "Haircut with Sam Carter",
                              dtstamp=datetime(2024, 3, 1, tzinfo=timezone.utc))

        event = Calendar.from_ical(ics).walk("VEVENT")[0]
        assert str(event["uid"]) == "uid-1"
        assert event["dtstart"].dt == datetime(2024, 3, 10, 14, 30, tzinfo=timezone.utc)
        assert event["dtend"].dt == datetime(2024, 3, 10, 15, 30, tzinfo=timezone.utc)
        assert str(event["summary"]) == "Haircut with Sam Carter"
        assert str(event["status"]) == "CONFIRMED"
        assert "DTSTART:20240310T143000Z" in ics
        assert "VERSION:2.0" in ics

    def test_naive_times_are_utc(self):
        ics = build_event_ics("uid-2", datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10), "Booking")
        assert "DTSTART:20240101T090000Z" in ics


class TestScanCalendarBlocks:

    def test_finds_each_block(self):
        text = "junk " + BLOCK.format(uid="a") + " more junk " + BLOCK.format(uid="b")
        blocks = scan_calendar_blocks(text)
        assert len(blocks) == 2
        assert "UID:a" in blocks[0]
        assert blocks[1].endswith("END:VCALENDAR")

    def test_unterminated_block_is_dropped(self):
        assert scan_calendar_blocks("BEGIN:VCALENDAR\nBEGIN:VEVENT\n" * 3) == []

    def test_block_count_is_capped(self):
        text = BLOCK.format(uid="x") * 20
        assert len(scan_calendar_blocks(text, max_blocks=5)) == 5

    def test_large_input_without_markers(self):
        assert scan_calendar_blocks("BEGIN:VCALENDA" * 100000) == []


class TestExtractCalendarBlocks:

    def test_malformed_xml_falls_back_to_scan(self):
        body = "<multistatus><calendar-data>" + BLOCK.format(uid="a") + "</oops>"
        blocks = extract_calendar_blocks(body)
        assert len(blocks) == 1

    def test_empty_body(self):
        assert extract_calendar_blocks(b"") == []


class TestParseCalendarBlock:

    def test_all_day_event(self):
        block = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nUID:allday\nDTSTART;VALUE=DATE:20240105\n" \
                "DTEND;VALUE=DATE:20240106\nEND:VEVENT\nEND:VCALENDAR"
        event = parse_calendar_block(block, "https://dav.example.com/cal/work/")[0]
        assert event.starts_at == datetime(2024, 1, 5, tzinfo=timezone.utc)
        assert event.ends_at == datetime(2024, 1, 6, tzinfo=timezone.utc)
        assert event.summary == "Untitled Event"

    def test_duration_instead_of_end(self):
        block = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nUID:dur\nDTSTART:20240105T090000Z\n" \
                "DURATION:PT45M\nEND:VEVENT\nEND:VCALENDAR"
        event = parse_calendar_block(block, "https://dav.example.com/cal/work/")[0]
        assert event.ends_at - event.starts_at == timedelta(minutes=45)

    def test_payload_with_several_calendars(self):
        payload = BLOCK.format(uid="first") + "\n" + BLOCK.format(uid="second")

        events = parse_calendar_block(payload, "https://dav.example.com/cal/work/")

        assert [e.external_event_id for e in events] == ["first", "second"]

    def test_report_keeps_good_blocks(self):
        bad = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nUID:bad\nDTSTART:20240105T090000Z\nEND:VEVENT\nEND:VCALENDAR"
        body = "not xml " + BLOCK.format(uid="a") + bad + BLOCK.format(uid="b")

        events, errors = parse_report(body, "https://dav.example.com/cal/work/")

        assert [e.external_event_id for e in events] == ["a", "b"]
        assert len(errors) == 1
