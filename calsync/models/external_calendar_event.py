# ===== calsync/models/external_calendar_event.py =====
import logging

from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid, UniqueConstraint
from sqlalchemy.orm import Session, relationship
import uuid

from calsync.models.base import Base
from calsync.utils.timeutils import utcnow, as_utc

logger = logging.getLogger(__name__)


class ExternalCalendarEvent(Base):
    """Busy block imported from a connected calendar, used for availability"""
    __tablename__ = "external_calendar_events"
    __table_args__ = (
        UniqueConstraint(
            "calendar_connection_id", "external_calendar_id", "external_event_id",
            name="uq_external_event_per_connection",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    calendar_connection_id = Column(Uuid, ForeignKey("calendar_connections.id"), nullable=False)

    external_event_id = Column(String, nullable=False)
    external_calendar_id = Column(String, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    summary = Column(String, nullable=True)

    last_imported_at = Column(DateTime(timezone=True), default=utcnow)

    connection = relationship("CalendarConnection", back_populates="external_events")

    @classmethod
    def import_for_connection(cls, db: Session, connection, events, window_start=None, window_end=None) -> dict:
        """Upsert imported events and drop rows in the window that vanished remotely.

        ``events`` are ImportedEvent values. Returns imported/removed counts and
        per-event errors; one bad event never aborts the batch.
        """
        existing = {
            (row.external_calendar_id, row.external_event_id): row
            for row in db.query(cls).filter(cls.calendar_connection_id == connection.id).all()
        }

        imported_count = 0
        errors = []
        seen = set()
        now = utcnow()

        for event in events:
            key = (event.external_calendar_id, event.external_event_id)
            if not event.external_event_id or as_utc(event.ends_at) <= as_utc(event.starts_at):
                errors.append(f"Skipped invalid event {event.external_event_id!r}")
                continue
            if key in seen:
                continue
            seen.add(key)

            row = existing.get(key)
            if row is None:
                row = cls(
                    calendar_connection_id=connection.id,
                    external_event_id=event.external_event_id,
                    external_calendar_id=event.external_calendar_id,
                )
                db.add(row)
            row.starts_at = event.starts_at
            row.ends_at = event.ends_at
            row.summary = event.summary
            row.last_imported_at = now
            imported_count += 1

        removed_count = 0
        if window_start is not None and window_end is not None:
            for key, row in existing.items():
                if key in seen:
                    continue
                if as_utc(window_start) <= as_utc(row.starts_at) <= as_utc(window_end):
                    db.delete(row)
                    removed_count += 1

        if errors:
            logger.warning(f"Import for connection {connection.id} skipped {len(errors)} event(s)")

        return {"imported_count": imported_count, "removed_count": removed_count, "errors": errors}
