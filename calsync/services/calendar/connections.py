# calsync/services/calendar/connections.py
"""Creating and replacing CalendarConnection rows."""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from calsync.models import CalendarConnection, CalendarSyncLog, StaffMember
from calsync.schemas.calendar_events import CaldavProvider, CalendarProvider
from calsync.services.calendar.caldav import build_caldav_client, detect_caldav_provider
from calsync.services.calendar.caldav.discovery import IcloudDiscovery
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class StaffMemberNotFound(LookupError):
    pass


class CaldavConnectionFailed(Exception):
    def __init__(self, message: str, error_kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_kind = error_kind


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: Optional[str] = None


def _as_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _staff_member(db: Session, business_id, staff_member_id) -> StaffMember:
    staff_member = db.get(StaffMember, _as_uuid(staff_member_id))
    if staff_member is None or staff_member.business_id != _as_uuid(business_id):
        raise StaffMemberNotFound(f"Staff member {staff_member_id} not found for business {business_id}")
    return staff_member


def _remove_connection(db: Session, staff_member: StaffMember, connection: CalendarConnection):
    # The default-connection back-reference must go first or the delete leaves it dangling
    if staff_member.default_calendar_connection_id == connection.id:
        staff_member.default_calendar_connection_id = None
        db.flush()

    # Audit rows outlive the connection
    mapping_ids = [m.id for m in connection.event_mappings]
    db.query(CalendarSyncLog).filter(CalendarSyncLog.calendar_connection_id == connection.id).update(
        {CalendarSyncLog.calendar_connection_id: None, CalendarSyncLog.calendar_event_mapping_id: None},
        synchronize_session=False,
    )
    if mapping_ids:
        db.query(CalendarSyncLog).filter(CalendarSyncLog.calendar_event_mapping_id.in_(mapping_ids)).update(
            {CalendarSyncLog.calendar_event_mapping_id: None},
            synchronize_session=False,
        )

    db.delete(connection)
    db.flush()
    logger.info(f"Removed {connection.provider} connection {connection.id} for staff member {staff_member.id}")


def provision_connection(
        db: Session,
        *,
        business_id,
        staff_member_id,
        provider: CalendarProvider,
        uid: Optional[str] = None,
        tokens: Optional[TokenSet] = None,
        caldav_provider: Optional[CaldavProvider] = None,
        caldav_username: Optional[str] = None,
        caldav_password: Optional[str] = None,
        caldav_url: Optional[str] = None,
) -> CalendarConnection:
    """Create the staff member's connection for ``provider``, replacing any prior one.

    Reconnecting the same provider account (same ``uid``) refreshes the
    credentials in place so existing event mappings stay valid. The caller
    commits.
    """
    staff_member = _staff_member(db, business_id, staff_member_id)
    now = utcnow()

    existing = (
        db.query(CalendarConnection)
        .filter(
            CalendarConnection.staff_member_id == staff_member.id,
            CalendarConnection.provider == provider.value,
        )
        .with_for_update()
        .first()
    )

    if existing is not None and uid and existing.uid == uid:
        connection = existing
        logger.info(f"Reconnecting {provider.value} account for staff member {staff_member.id}")
    else:
        if existing is not None:
            _remove_connection(db, staff_member, existing)
        connection = CalendarConnection(
            business_id=staff_member.business_id,
            staff_member_id=staff_member.id,
            provider=provider.value,
        )
        db.add(connection)

    connection.uid = uid
    connection.active = True
    connection.connected_at = now
    if tokens is not None:
        connection.access_token = tokens.access_token
        if tokens.refresh_token:
            connection.refresh_token = tokens.refresh_token
        connection.token_expires_at = tokens.expires_at
        connection.scopes = tokens.scopes
    if provider == CalendarProvider.CALDAV:
        connection.caldav_provider = caldav_provider.value if caldav_provider else None
        connection.caldav_username = caldav_username
        connection.caldav_password = caldav_password
        connection.caldav_url = caldav_url
    db.flush()

    if staff_member.default_calendar_connection_id is None:
        staff_member.default_calendar_connection_id = connection.id
        db.flush()

    logger.info(f"Provisioned {provider.value} connection {connection.id} for staff member {staff_member.id}")
    return connection


def connect_caldav_account(
        db: Session,
        *,
        business_id,
        staff_member_id,
        username: str,
        password: str,
        server_url: Optional[str] = None,
        caldav_provider: Optional[CaldavProvider] = None,
        client_factory: Callable = build_caldav_client,
) -> tuple:
    """Test the credentials by running discovery, then provision the connection.

    Returns ``(connection, test_result)``. Raises CaldavConnectionFailed when
    no usable calendar is found; nothing is persisted in that case.
    """
    _staff_member(db, business_id, staff_member_id)
    kind = detect_caldav_provider(username, server_url, explicit=caldav_provider.value if caldav_provider else None)
    if kind == CaldavProvider.ICLOUD and not server_url:
        server_url = IcloudDiscovery.BASE_URL

    candidate = CalendarConnection(
        business_id=_as_uuid(business_id),
        staff_member_id=_as_uuid(staff_member_id),
        provider=CalendarProvider.CALDAV.value,
        caldav_provider=kind.value,
        caldav_username=username,
        caldav_url=server_url,
        active=True,
    )
    candidate.caldav_password = password

    test_result = client_factory(candidate).test_connection()
    if not test_result["success"]:
        logger.warning(f"CalDAV connection test failed for staff member {staff_member_id}: {test_result['message']}")
        raise CaldavConnectionFailed(test_result["message"], test_result.get("error_kind"))

    connection = provision_connection(
        db,
        business_id=business_id,
        staff_member_id=staff_member_id,
        provider=CalendarProvider.CALDAV,
        uid=f"{kind.value}:{username.lower()}",
        caldav_provider=kind,
        caldav_username=username,
        caldav_password=password,
        caldav_url=server_url,
    )
    return connection, test_result


def deactivate_connection(db: Session, connection: CalendarConnection, reason: str):
    if connection.active:
        connection.deactivate()
        db.flush()
        logger.warning(f"Deactivated calendar connection {connection.id}: {reason}")

