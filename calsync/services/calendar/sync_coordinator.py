# calsync/services/calendar/sync_coordinator.py
"""
Orchestrates booking sync across every active calendar connection of a
staff member.

Provider clients never raise; anything that still escapes is caught here per
connection, recorded on the mapping and in the audit log, and never stops the
remaining connections.
"""
import logging
import time
from collections import OrderedDict
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calsync.models import Booking, CalendarConnection, CalendarEventMapping, CalendarSyncLog, ExternalCalendarEvent
from calsync.schemas.calendar_events import BookingSyncStatus, CalendarProvider, MappingStatus, SyncAction, SyncOutcome
from calsync.services.calendar.base import DiscoveryResult, SyncError, SyncLogEntry, SyncProvider, SyncResult
from calsync.services.calendar.caldav import build_caldav_client
from calsync.services.calendar.connections import deactivate_connection
from calsync.services.calendar.errors import SyncErrorKind, UnsupportedProvider
from calsync.services.calendar.google_calendar_service import GoogleClient
from calsync.services.calendar.outlook_service import MicrosoftClient
from calsync.utils.timeutils import day_window, utcnow

logger = logging.getLogger(__name__)


def provider_for_connection(connection: CalendarConnection, **kwargs) -> SyncProvider:
    """Pick the client for a connection's provider tag"""
    token_refresher = kwargs.pop("token_refresher", None)
    if connection.provider == CalendarProvider.GOOGLE.value:
        return GoogleClient(connection, token_refresher=token_refresher, **kwargs)
    elif connection.provider == CalendarProvider.MICROSOFT.value:
        return MicrosoftClient(connection, token_refresher=token_refresher, **kwargs)
    elif connection.provider == CalendarProvider.CALDAV.value:
        return build_caldav_client(connection, **kwargs)
    raise UnsupportedProvider(f"Unsupported calendar provider: {connection.provider}")


def aggregate_status(outcomes: List[bool]) -> Optional[BookingSyncStatus]:
    if not outcomes:
        return None
    if all(outcomes):
        return BookingSyncStatus.SYNCED
    if any(outcomes):
        return BookingSyncStatus.SYNC_PENDING
    return BookingSyncStatus.SYNC_FAILED


class SyncSession:
    """Clients and discovery results reused for the length of one orchestration call"""

    def __init__(self, factory: Callable[[CalendarConnection], SyncProvider]):
        self.factory = factory
        self._providers: Dict = {}
        self._calendars: Dict = {}

    def provider(self, connection: CalendarConnection) -> SyncProvider:
        if connection.id not in self._providers:
            self._providers[connection.id] = self.factory(connection)
        return self._providers[connection.id]

    def calendars(self, connection: CalendarConnection) -> DiscoveryResult:
        if connection.id not in self._calendars:
            self._calendars[connection.id] = self.provider(connection).discover()
        return self._calendars[connection.id]


class SyncCoordinator:

    def __init__(
            self,
            db: Session,
            *,
            provider_factory: Callable[..., SyncProvider] = provider_for_connection,
            token_refresher: Optional[Callable[[CalendarConnection], bool]] = None,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.provider_factory = provider_factory
        self.token_refresher = token_refresher
        self.sleep = sleep

    def new_session(self) -> SyncSession:
        return SyncSession(
            lambda connection: self.provider_factory(
                connection, token_refresher=self.token_refresher, sleep=self.sleep
            )
        )

    # ---- queries ----

    def active_connections(self, staff_member_id) -> List[CalendarConnection]:
        if staff_member_id is None:
            return []
        return (
            self.db.query(CalendarConnection)
            .filter(CalendarConnection.staff_member_id == staff_member_id, CalendarConnection.active.is_(True))
            .order_by(CalendarConnection.created_at.asc())
            .all()
        )

    def _mapping_query(self, booking: Booking, connection: CalendarConnection):
        return self.db.query(CalendarEventMapping).filter(
            CalendarEventMapping.booking_id == booking.id,
            CalendarEventMapping.calendar_connection_id == connection.id,
        )

    def _lock_mapping(self, booking: Booking, connection: CalendarConnection,
                      create: bool = True) -> Optional[CalendarEventMapping]:
        """Row-locked mapping for the pair, created on first sync"""
        mapping = self._mapping_query(booking, connection).with_for_update().first()
        if mapping is not None or not create:
            return mapping

        mapping = CalendarEventMapping(
            booking_id=booking.id,
            calendar_connection_id=connection.id,
            status=MappingStatus.PENDING.value,
            retry_count=0,
        )
        self.db.add(mapping)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent worker created it first
            self.db.rollback()
            mapping = self._mapping_query(booking, connection).with_for_update().first()
        return mapping

    # ---- audit ----

    def _record(self, connection: CalendarConnection, mapping: Optional[CalendarEventMapping], entry: SyncLogEntry):
        self.db.add(CalendarSyncLog(
            business_id=connection.business_id,
            calendar_connection_id=connection.id,
            calendar_event_mapping_id=mapping.id if mapping is not None else None,
            provider=connection.provider,
            action=entry.action.value,
            outcome=entry.outcome.value,
            message=entry.message,
            details=entry.details,
        ))

    def _handle_failure(self, connection: CalendarConnection, error: SyncError):
        if error.kind.deactivates_connection:
            deactivate_connection(self.db, connection, f"{error.kind.value} during sync")

    # ---- per (booking, connection) ----

    def _push(self, session: SyncSession, booking: Booking, connection: CalendarConnection,
              mapping: CalendarEventMapping) -> SyncResult:
        provider = session.provider(connection)
        if mapping.external_event_id:
            calendar_id = mapping.external_calendar_id
            return provider.update_event(
                booking,
                mapping.external_event_id,
                calendars=None if calendar_id else session.calendars(connection),
                calendar_id=calendar_id,
            )

        if not mapping.event_uid:
            # Persisted before the first attempt so every retry reuses it
            mapping.event_uid = provider.generate_event_uid(booking)
            self.db.commit()
        return provider.create_event(booking, calendars=session.calendars(connection), event_uid=mapping.event_uid)

    def _sync_pair(self, session: SyncSession, booking: Booking, connection: CalendarConnection) -> bool:
        action = SyncAction.CREATE
        mapping = None
        try:
            mapping = self._lock_mapping(booking, connection)
            if mapping.external_event_id:
                action = SyncAction.UPDATE
            result = self._push(session, booking, connection, mapping)
        except Exception as e:
            logger.exception(f"Sync of booking {booking.id} to connection {connection.id} failed")
            self.db.rollback()
            if mapping is None:
                mapping = self._lock_mapping(booking, connection)
            result = SyncResult.failed(action, SyncError(SyncErrorKind.UNKNOWN, f"Calendar sync failed: {e}"))

        if result.success:
            mapping.mark_synced(result.external_event_id, result.external_calendar_id)
            connection.mark_synced()
            logger.info(f"Booking {booking.id} {result.action.value}d on connection {connection.id}")
        else:
            mapping.mark_failed(result.error.message, result.action)
            self._handle_failure(connection, result.error)
            logger.warning(
                f"Booking {booking.id} {result.action.value} failed on connection {connection.id}: "
                f"{result.error.kind.value}"
            )

        self._record(connection, mapping, result.log_entry(booking_id=str(booking.id)))
        self.db.commit()
        return result.success

    def _delete_pair(self, session: SyncSession, booking: Booking, connection: CalendarConnection,
                     mapping: CalendarEventMapping) -> bool:
        if not mapping.external_event_id:
            mapping.mark_deleted()
            self.db.commit()
            return True

        try:
            calendar_id = mapping.external_calendar_id
            result = session.provider(connection).delete_event(
                mapping.external_event_id,
                calendars=None if calendar_id else session.calendars(connection),
                calendar_id=calendar_id,
            )
        except Exception as e:
            logger.exception(f"Delete of booking {booking.id} on connection {connection.id} failed")
            self.db.rollback()
            result = SyncResult.failed(SyncAction.DELETE,
                                       SyncError(SyncErrorKind.UNKNOWN, f"Calendar sync failed: {e}"))

        if result.success:
            mapping.mark_deleted()
            connection.mark_synced()
        else:
            mapping.mark_failed(result.error.message, SyncAction.DELETE)
            self._handle_failure(connection, result.error)

        self._record(connection, mapping, result.log_entry(booking_id=str(booking.id)))
        self.db.commit()
        return result.success

    def _set_booking_status(self, booking: Booking, outcomes: List[bool]) -> Optional[BookingSyncStatus]:
        status = aggregate_status(outcomes)
        if status is not None:
            booking.calendar_event_status = status.value
            self.db.commit()
        return status

    def _mark_unsynced(self, booking: Booking) -> BookingSyncStatus:
        booking.calendar_event_status = BookingSyncStatus.NOT_SYNCED.value
        self.db.commit()
        return BookingSyncStatus.NOT_SYNCED

    @staticmethod
    def _report(booking: Booking, outcomes: List[bool], status: Optional[BookingSyncStatus]) -> dict:
        return {
            "booking_id": str(booking.id),
            "status": status.value if status else booking.calendar_event_status,
            "attempted": len(outcomes),
            "succeeded": sum(1 for ok in outcomes if ok),
            "failed": sum(1 for ok in outcomes if not ok),
        }

    # ---- operations ----

    def sync_booking(self, booking: Booking, session: Optional[SyncSession] = None) -> dict:
        """Create or update the booking's event on every active connection"""
        session = session or self.new_session()
        outcomes = []
        for connection in self.active_connections(booking.staff_member_id):
            if not connection.active:
                continue
            outcomes.append(self._sync_pair(session, booking, connection))
        return self._report(booking, outcomes, self._set_booking_status(booking, outcomes))

    def update_booking(self, booking: Booking) -> dict:
        """Push changes to connections that already mirror the booking"""
        session = self.new_session()
        outcomes = []
        for connection in self.active_connections(booking.staff_member_id):
            if self._lock_mapping(booking, connection, create=False) is None:
                continue
            outcomes.append(self._sync_pair(session, booking, connection))
        return self._report(booking, outcomes, self._set_booking_status(booking, outcomes))

    def delete_booking(self, booking: Booking) -> dict:
        session = self.new_session()
        outcomes = []
        for connection in self.active_connections(booking.staff_member_id):
            mapping = self._lock_mapping(booking, connection, create=False)
            if mapping is None or mapping.status == MappingStatus.DELETED.value:
                continue
            outcomes.append(self._delete_pair(session, booking, connection, mapping))
        if outcomes and all(outcomes):
            return self._report(booking, outcomes, self._mark_unsynced(booking))
        return self._report(booking, outcomes, self._set_booking_status(booking, outcomes))

    def import_availability(self, staff_member, start, end) -> dict:
        """Pull busy blocks from every active connection into ExternalCalendarEvent"""
        session = self.new_session()
        results = {}
        for connection in self.active_connections(staff_member.id):
            results[str(connection.id)] = self._import_connection(session, connection, start, end)
        return results

    def _import_connection(self, session: SyncSession, connection: CalendarConnection, start, end) -> dict:
        try:
            provider = session.provider(connection)
            calendars = session.calendars(connection)
            result = provider.import_events(start, end, calendars=calendars)
        except Exception as e:
            logger.exception(f"Import failed for connection {connection.id}")
            self.db.rollback()
            error = SyncError(SyncErrorKind.UNKNOWN, f"Calendar import failed: {e}")
            self._record(connection, None, SyncLogEntry(SyncAction.IMPORT, SyncOutcome.FAILURE, error.message))
            self.db.commit()
            return {"success": False, "imported_count": 0, "removed_count": 0, "errors": [error.message]}

        if not result.success:
            self._handle_failure(connection, result.error)
            self._record(connection, None, result.log_entry())
            self.db.commit()
            return {"success": False, "imported_count": 0, "removed_count": 0,
                    "errors": result.errors + [result.error.message]}

        window_start = window_end = None
        if not result.errors:
            # Only a clean import can tell which stored events vanished remotely
            business = connection.business
            window_start, window_end = day_window(start, end, business.time_zone if business else None)
        stored = ExternalCalendarEvent.import_for_connection(
            self.db, connection, result.events, window_start=window_start, window_end=window_end
        )
        connection.mark_synced()
        self._record(connection, None, result.log_entry(removed=stored["removed_count"]))
        self.db.commit()
        return {
            "success": True,
            "imported_count": stored["imported_count"],
            "removed_count": stored["removed_count"],
            "errors": result.errors + stored["errors"],
        }

    def batch_sync_bookings(self, bookings: Iterable[Booking]) -> dict:
        """Sync many bookings, building each connection's client and discovery once"""
        by_staff: "OrderedDict" = OrderedDict()
        for booking in bookings:
            by_staff.setdefault(booking.staff_member_id, []).append(booking)

        session = self.new_session()
        outcomes_by_booking: Dict = {}
        for staff_member_id, staff_bookings in by_staff.items():
            for connection in self.active_connections(staff_member_id):
                for booking in staff_bookings:
                    # May have been deactivated by an earlier booking in this batch
                    if not connection.active:
                        break
                    outcomes_by_booking.setdefault(booking.id, []).append(
                        self._sync_pair(session, booking, connection)
                    )

        summary = {"processed": 0, "synced": 0, "sync_pending": 0, "sync_failed": 0}
        for staff_bookings in by_staff.values():
            for booking in staff_bookings:
                status = self._set_booking_status(booking, outcomes_by_booking.get(booking.id, []))
                summary["processed"] += 1
                if status is not None:
                    summary[status.value] += 1
        logger.info(f"Batch sync finished: {summary}")
        return summary

    def retry_failed_syncs(self, business_id=None, limit: int = 50) -> dict:
        """Re-attempt failed mappings that are still under the retry cap"""
        mappings = CalendarEventMapping.retry_eligible(self.db, business_id=business_id, limit=limit)
        session = self.new_session()
        attempted = succeeded = 0
        touched: "OrderedDict" = OrderedDict()

        for mapping in mappings:
            connection, booking = mapping.connection, mapping.booking
            if not connection.active:
                continue
            attempted += 1
            if mapping.pending_action == SyncAction.DELETE.value or booking.status == "cancelled":
                ok = self._delete_pair(session, booking, connection, mapping)
            else:
                ok = self._sync_pair(session, booking, connection)
            if ok:
                succeeded += 1
            touched[booking.id] = booking

        for booking in touched.values():
            self._recompute_booking_status(booking)

        logger.info(f"Retried {attempted} failed calendar sync(s), {succeeded} succeeded")
        return {"total_attempted": attempted, "successful": succeeded, "failed": attempted - succeeded}

    def _recompute_booking_status(self, booking: Booking) -> Optional[BookingSyncStatus]:
        active_ids = {c.id for c in self.active_connections(booking.staff_member_id)}
        mappings = [
            m for m in self.db.query(CalendarEventMapping).filter(CalendarEventMapping.booking_id == booking.id)
            if m.calendar_connection_id in active_ids
        ]
        outcomes = [m.status == MappingStatus.SYNCED.value for m in mappings if m.status != MappingStatus.DELETED.value]
        if mappings and not outcomes:
            # Every mirrored event has been removed
            return self._mark_unsynced(booking)
        return self._set_booking_status(booking, outcomes)

    def sync_statistics(self, business_id=None, since=None) -> dict:
        """Read-only aggregation over the audit log, the last 24 hours unless told otherwise"""
        if since is None:
            since = utcnow() - timedelta(hours=24)
        query = CalendarSyncLog.scoped(self.db, business_id=business_id, since=since)
        total = query.count()
        successful = query.filter(CalendarSyncLog.outcome == SyncOutcome.SUCCESS.value).count()
        by_provider = {}
        for provider in CalendarProvider:
            provider_total = CalendarSyncLog.scoped(self.db, business_id, since, provider.value).count()
            if provider_total:
                by_provider[provider.value] = {
                    "total_attempts": provider_total,
                    "success_rate": CalendarSyncLog.success_rate(self.db, business_id, since, provider.value),
                }
        return {
            "total_attempts": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": CalendarSyncLog.success_rate(self.db, business_id=business_id, since=since),
            "by_provider": by_provider,
            "recent_failures": [
                {"action": log.action, "message": log.message, "created_at": log.created_at}
                for log in CalendarSyncLog.recent_failures(self.db, business_id=business_id, since=since)
            ],
        }
