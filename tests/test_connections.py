"""Unit tests for connection provisioning and CalDAV account setup."""
import pytest

from calsync.models import CalendarConnection, CalendarEventMapping, CalendarSyncLog, StaffMember
from calsync.schemas.calendar_events import CaldavProvider, CalendarProvider, MappingStatus, SyncAction, SyncOutcome
from calsync.services.calendar.connections import (
    CaldavConnectionFailed,
    StaffMemberNotFound,
    TokenSet,
    connect_caldav_account,
    deactivate_connection,
    provision_connection,
)


class FakeCaldavClient:
    def __init__(self, connection, result):
        self.connection = connection
        self.result = result

    def test_connection(self):
        return self.result


def client_factory(result, seen=None):
    def factory(connection):
        if seen is not None:
            seen.append(connection)
        return FakeCaldavClient(connection, result)
    return factory


OK = {"success": True, "message": "Successfully connected", "calendar_urls": ["https://dav.example.com/cal/work/"]}


class TestProvisionConnection:

    def test_first_connection_becomes_default(self, db, business, staff_member):
        connection = provision_connection(
            db, business_id=business.id, staff_member_id=staff_member.id,
            provider=CalendarProvider.GOOGLE, uid="robin@gmail.com", tokens=TokenSet("token"),
        )
        db.commit()

        assert db.get(StaffMember, staff_member.id).default_calendar_connection_id == connection.id

    def test_second_provider_keeps_default(self, db, business, staff_member):
        google = provision_connection(db, business_id=business.id, staff_member_id=staff_member.id,
                                      provider=CalendarProvider.GOOGLE, uid="g", tokens=TokenSet("token"))
        provision_connection(db, business_id=business.id, staff_member_id=staff_member.id,
                             provider=CalendarProvider.MICROSOFT, uid="m", tokens=TokenSet("token"))
        db.commit()

        assert db.query(CalendarConnection).count() == 2
        assert staff_member.default_calendar_connection_id == google.id

    def test_replacement_keeps_audit_rows(self, db, business, staff_member, booking):
        old = provision_connection(db, business_id=business.id, staff_member_id=staff_member.id,
                                   provider=CalendarProvider.GOOGLE, uid="old", tokens=TokenSet("token"))
        mapping = CalendarEventMapping(booking_id=booking.id, calendar_connection_id=old.id,
                                       status=MappingStatus.SYNCED.value, external_event_id="evt-1")
        db.add(mapping)
        db.flush()
        db.add(CalendarSyncLog(calendar_connection_id=old.id, calendar_event_mapping_id=mapping.id,
                               business_id=business.id, action=SyncAction.CREATE.value,
                               outcome=SyncOutcome.SUCCESS.value))
        db.commit()

        new = provision_connection(db, business_id=business.id, staff_member_id=staff_member.id,
                                   provider=CalendarProvider.GOOGLE, uid="new", tokens=TokenSet("token"))
        db.commit()

        log = db.query(CalendarSyncLog).one()
        assert log.calendar_connection_id is None
        assert log.calendar_event_mapping_id is None
        assert log.business_id == business.id
        assert db.query(CalendarEventMapping).count() == 0
        assert staff_member.default_calendar_connection_id == new.id

    def test_staff_member_from_other_business(self, db, staff_member):
        with pytest.raises(StaffMemberNotFound):
            provision_connection(db, business_id="00000000-0000-0000-0000-000000000000",
                                 staff_member_id=staff_member.id, provider=CalendarProvider.GOOGLE)


class TestConnectCaldavAccount:

    def test_icloud_detected_from_apple_id(self, db, business, staff_member):
        seen = []
        connection, result = connect_caldav_account(
            db, business_id=str(business.id), staff_member_id=str(staff_member.id),
            username="Robin@iCloud.com", password="abcd-efgh-ijkl-mnop",
            client_factory=client_factory(OK, seen),
        )
        db.commit()

        assert result["success"]
        assert seen[0].caldav_provider == "icloud"
        assert seen[0].caldav_url == "https://caldav.icloud.com"
        assert connection.caldav_provider == CaldavProvider.ICLOUD.value
        assert connection.uid == "icloud:robin@icloud.com"
        assert connection.caldav_password == "abcd-efgh-ijkl-mnop"
        assert connection.caldav_password_encrypted != b"abcd-efgh-ijkl-mnop"

    def test_failed_test_persists_nothing(self, db, business, staff_member):
        failure = {"success": False, "message": "Calendar authorization expired. Please reconnect.",
                   "error_kind": "unauthorized"}

        with pytest.raises(CaldavConnectionFailed) as exc_info:
            connect_caldav_account(
                db, business_id=business.id, staff_member_id=staff_member.id,
                username="robin", password="wrong", server_url="https://dav.example.com/cal/work/",
                client_factory=client_factory(failure),
            )
        db.commit()

        assert exc_info.value.error_kind == "unauthorized"
        assert db.query(CalendarConnection).count() == 0

    def test_explicit_provider(self, db, business, staff_member):
        connection, _ = connect_caldav_account(
            db, business_id=business.id, staff_member_id=staff_member.id,
            username="robin", password="s3cret", server_url="https://files.example.org",
            caldav_provider=CaldavProvider.NEXTCLOUD, client_factory=client_factory(OK),
        )

        assert connection.caldav_provider == "nextcloud"
        assert connection.caldav_url == "https://files.example.org"

    def test_reconnecting_same_account_updates_password(self, db, business, staff_member):
        first, _ = connect_caldav_account(
            db, business_id=business.id, staff_member_id=staff_member.id, username="robin", password="old",
            server_url="https://dav.example.com/cal/work/", client_factory=client_factory(OK),
        )
        db.commit()
        second, _ = connect_caldav_account(
            db, business_id=business.id, staff_member_id=staff_member.id, username="robin", password="new",
            server_url="https://dav.example.com/cal/work/", client_factory=client_factory(OK),
        )
        db.commit()

        assert second.id == first.id
        assert second.caldav_password == "new"


class TestDeactivateConnection:

    def test_deactivate_is_idempotent(self, db, make_connection, caplog):
        connection = make_connection()

        deactivate_connection(db, connection, "revoked")
        deactivate_connection(db, connection, "revoked again")

        assert not connection.active
        assert sum("Deactivated calendar connection" in r.getMessage() for r in caplog.records) == 1
