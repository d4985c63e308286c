import logging
import uuid
from contextlib import contextmanager
from datetime import timedelta

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from calsync.config.celery_config import celery_app
from calsync.config.database import get_db
from calsync.config.redis import RedisKeys, get_redis
from calsync.config.settings import get_settings
from calsync.models import Booking, CalendarConnection, StaffMember
from calsync.schemas.calendar_events import BookingSyncStatus
from calsync.services.calendar.oauth_handler import OAuthHandler
from calsync.services.calendar.sync_coordinator import SyncCoordinator
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

# Provider errors are settled by the coordinator; only these are worth a task retry
INFRASTRUCTURE_ERRORS = (SQLAlchemyError, RedisError)

BOOKING_LOCK_TIMEOUT = 300
BOOKING_LOCK_WAIT = 60


class BookingLocked(Exception):
    pass


def build_coordinator(db, redis_client=None) -> SyncCoordinator:
    handler = OAuthHandler(db, redis_client=redis_client)
    return SyncCoordinator(db, token_refresher=handler.refresh_token)


@contextmanager
def booking_lock(redis_client, booking_id):
    """Keeps operations for one booking in submission order across workers"""
    lock = redis_client.lock(
        RedisKeys.BOOKING_SYNC_LOCK.format(booking_id=booking_id),
        timeout=BOOKING_LOCK_TIMEOUT,
        blocking_timeout=BOOKING_LOCK_WAIT,
    )
    if not lock.acquire():
        raise BookingLocked(f"Booking {booking_id} is locked by another worker")
    try:
        yield
    finally:
        try:
            lock.release()
        except RedisError as e:
            # Lock expired underneath us; nothing left to release
            logger.warning(f"Could not release sync lock for booking {booking_id}: {e}")


def _run_booking_operation(task, booking_id: str, operation: str):
    db = next(get_db())
    try:
        booking = db.get(Booking, uuid.UUID(str(booking_id)))
        if not booking:
            logger.error(f"Booking {booking_id} not found")
            return {"status": "failed", "reason": "booking_not_found"}

        redis_client = get_redis()
        with booking_lock(redis_client, booking.id):
            coordinator = build_coordinator(db, redis_client)
            report = getattr(coordinator, operation)(booking)

        logger.info(f"Calendar {operation} for booking {booking_id}: {report['status']}")
        return report

    except BookingLocked as exc:
        logger.info(str(exc))
        raise task.retry(exc=exc, countdown=30)

    except INFRASTRUCTURE_ERRORS as exc:
        logger.error(f"Calendar {operation} for booking {booking_id} hit an infrastructure error: {exc}")
        db.rollback()
        raise task.retry(exc=exc, countdown=60 * (task.request.retries + 1))

    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def sync_booking(self, booking_id: str):
    """Create or update a booking's events on all of the staff member's calendars"""
    return _run_booking_operation(self, booking_id, "sync_booking")


@celery_app.task(bind=True, max_retries=3)
def update_booking(self, booking_id: str):
    return _run_booking_operation(self, booking_id, "update_booking")


@celery_app.task(bind=True, max_retries=3)
def delete_booking(self, booking_id: str):
    """Remove a cancelled booking's events from every connected calendar"""
    return _run_booking_operation(self, booking_id, "delete_booking")


@celery_app.task(bind=True, max_retries=3)
def retry_failed(self, business_id: str = None, limit: int = 50):
    """Periodic sweep over failed mappings that are still under the retry cap"""
    db = next(get_db())
    try:
        coordinator = build_coordinator(db, get_redis())
        result = coordinator.retry_failed_syncs(
            business_id=uuid.UUID(str(business_id)) if business_id else None, limit=limit
        )
        return {"status": "success", **result}

    except INFRASTRUCTURE_ERRORS as exc:
        logger.error(f"Retry sweep failed: {exc}")
        db.rollback()
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def sync_pending(self, business_id: str = None, limit: int = 100):
    """Sync upcoming bookings that never reached every calendar"""
    db = next(get_db())
    try:
        query = db.query(Booking).filter(
            Booking.calendar_event_status.in_([
                BookingSyncStatus.NOT_SYNCED.value,
                BookingSyncStatus.SYNC_PENDING.value,
            ]),
            Booking.status != "cancelled",
            Booking.staff_member_id.isnot(None),
            Booking.end_time >= utcnow(),
        )
        if business_id:
            query = query.filter(Booking.business_id == uuid.UUID(str(business_id)))
        bookings = query.order_by(Booking.start_time.asc()).limit(limit).all()

        if not bookings:
            return {"status": "success", "processed": 0}

        coordinator = build_coordinator(db, get_redis())
        summary = coordinator.batch_sync_bookings(bookings)
        return {"status": "success", **summary}

    except INFRASTRUCTURE_ERRORS as exc:
        logger.error(f"Pending sync sweep failed: {exc}")
        db.rollback()
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def import_all_availability(self, business_id: str = None, days_ahead: int = None):
    """Refresh imported busy blocks for every staff member with an active calendar"""
    settings = get_settings()
    days_ahead = days_ahead or settings.IMPORT_DAYS_AHEAD

    db = next(get_db())
    try:
        query = (
            db.query(StaffMember)
            .join(CalendarConnection, CalendarConnection.staff_member_id == StaffMember.id)
            .filter(CalendarConnection.active.is_(True), StaffMember.active.is_(True))
        )
        if business_id:
            query = query.filter(StaffMember.business_id == uuid.UUID(str(business_id)))
        staff_members = query.distinct().all()

        start = utcnow().date()
        end = start + timedelta(days=days_ahead)
        coordinator = build_coordinator(db, get_redis())

        imported = 0
        failed_connections = 0
        for staff_member in staff_members:
            results = coordinator.import_availability(staff_member, start, end)
            for result in results.values():
                imported += result["imported_count"]
                if not result["success"]:
                    failed_connections += 1

        logger.info(f"Imported {imported} external event(s) for {len(staff_members)} staff member(s)")
        return {
            "status": "success",
            "staff_members": len(staff_members),
            "imported_count": imported,
            "failed_connections": failed_connections,
        }

    except INFRASTRUCTURE_ERRORS as exc:
        logger.error(f"Availability import failed: {exc}")
        db.rollback()
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

    finally:
        db.close()


@celery_app.task(bind=True, max_retries=1)
def full_sync(self, business_id: str = None):
    """Retry failures, push pending bookings, then refresh imported availability"""
    return {
        "retry_failed": retry_failed.run(business_id=business_id),
        "sync_pending": sync_pending.run(business_id=business_id),
        "import_all_availability": import_all_availability.run(business_id=business_id),
    }
