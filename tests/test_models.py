"""Unit tests for model helpers and the mapping state machine."""
from datetime import datetime, timedelta, timezone

import pytest

from calsync.models import CalendarConnection, CalendarEventMapping, ExternalCalendarEvent
from calsync.schemas.calendar_events import CalendarProvider, MappingStatus
from calsync.services.calendar.base import ImportedEvent


class TestCalendarConnection:

    @pytest.mark.parametrize("provider, scopes, expected", [
        ("google", "https://www.googleapis.com/auth/calendar", True),
        ("google", "openid https://www.googleapis.com/auth/calendar email", True),
        ("google", "https://www.googleapis.com/auth/calendar.readonly", False),
        ("google", "https://evil.example/?x=https://www.googleapis.com/auth/calendar", False),
        ("microsoft", "Calendars.ReadWrite,offline_access", True),
        ("microsoft", "https://graph.microsoft.com/Calendars.ReadWrite", True),
        ("microsoft", "Calendars.Read", False),
        ("google", None, False),
        ("caldav", None, True),
    ])
    def test_has_calendar_permissions(self, provider, scopes, expected):
        connection = CalendarConnection(provider=provider, scopes=scopes)
        assert connection.has_calendar_permissions() is expected

    def test_credentials_are_encrypted(self, make_connection):
        connection = make_connection(CalendarProvider.CALDAV, caldav_password="hunter2")
        assert connection.caldav_password == "hunter2"
        assert b"hunter2" not in connection.caldav_password_encrypted

    def test_token_expiry(self):
        now = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
        connection = CalendarConnection(provider="google", token_expires_at=now + timedelta(minutes=4))
        assert not connection.token_expired(now=now)
        assert connection.token_expired(now=now, margin_seconds=300)

    def test_caldav_never_expires(self):
        connection = CalendarConnection(provider="caldav")
        assert not connection.token_expired()
        assert not connection.needs_refresh()

    @pytest.mark.parametrize("provider, caldav_provider, name", [
        ("google", None, "Google Calendar"),
        ("microsoft", None, "Microsoft Outlook"),
        ("caldav", "icloud", "iCloud Calendar"),
        ("caldav", "nextcloud", "Nextcloud Calendar"),
        ("caldav", None, "CalDAV Calendar"),
    ])
    def test_display_name(self, provider, caldav_provider, name):
        assert CalendarConnection(provider=provider, caldav_provider=caldav_provider).provider_display_name == name


class TestCalendarEventMapping:

    def test_failure_then_success(self):
        mapping = CalendarEventMapping(status=MappingStatus.PENDING.value, retry_count=0)

        mapping.mark_failed("Rate limit exceeded")
        assert mapping.status == "failed"
        assert mapping.retry_count == 1
        assert mapping.can_retry()

        mapping.mark_synced("evt-1", "primary")
        assert mapping.status == "synced"
        assert mapping.retry_count == 0
        assert mapping.last_error is None
        assert mapping.last_synced_at is not None

    def test_retry_cap(self):
        mapping = CalendarEventMapping(status=MappingStatus.PENDING.value, retry_count=0)
        for _ in range(CalendarEventMapping.MAX_RETRIES):
            mapping.mark_failed("boom")
        assert not mapping.can_retry()
        assert mapping.terminally_failed

    def test_external_event_id_is_immutable(self):
        mapping = CalendarEventMapping(status=MappingStatus.SYNCED.value, external_event_id="evt-1")
        mapping.mark_synced("evt-1")
        with pytest.raises(ValueError):
            mapping.mark_synced("evt-2")

    def test_calendar_id_is_kept(self):
        mapping = CalendarEventMapping(status=MappingStatus.SYNCED.value, external_calendar_id="work")
        mapping.mark_synced("evt-1", "personal")
        assert mapping.external_calendar_id == "work"


class TestExternalCalendarEvent:

    def event(self, event_id, start_hour, end_hour):
        return ImportedEvent(
            external_event_id=event_id,
            external_calendar_id="primary",
            starts_at=datetime(2024, 1, 2, start_hour, tzinfo=timezone.utc),
            ends_at=datetime(2024, 1, 2, end_hour, tzinfo=timezone.utc),
        )

    def test_invalid_and_duplicate_events(self, db, make_connection):
        connection = make_connection()
        events = [self.event("a", 9, 10), self.event("a", 9, 10), self.event("bad", 11, 10), self.event("", 9, 10)]

        stored = ExternalCalendarEvent.import_for_connection(db, connection, events)
        db.commit()

        assert stored["imported_count"] == 1
        assert stored["removed_count"] == 0
        assert len(stored["errors"]) == 2
        assert db.query(ExternalCalendarEvent).count() == 1

    def test_upsert_updates_times(self, db, make_connection):
        connection = make_connection()
        ExternalCalendarEvent.import_for_connection(db, connection, [self.event("a", 9, 10)])
        db.commit()

        ExternalCalendarEvent.import_for_connection(db, connection, [self.event("a", 13, 14)])
        db.commit()

        row = db.query(ExternalCalendarEvent).one()
        assert row.starts_at.hour == 13

    def test_events_outside_window_survive(self, db, make_connection):
        connection = make_connection()
        ExternalCalendarEvent.import_for_connection(db, connection, [self.event("a", 9, 10)])
        db.commit()

        stored = ExternalCalendarEvent.import_for_connection(
            db, connection, [],
            window_start=datetime(2024, 2, 1, tzinfo=timezone.utc),
            window_end=datetime(2024, 2, 8, tzinfo=timezone.utc),
        )
        db.commit()

        assert stored["removed_count"] == 0
        assert db.query(ExternalCalendarEvent).count() == 1
