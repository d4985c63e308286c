# ===== calsync/models/calendar_event_mapping.py =====
from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey, Uuid, UniqueConstraint
from sqlalchemy.orm import Session, relationship
from sqlalchemy.sql import func
import uuid

from calsync.models.base import Base
from calsync.schemas.calendar_events import MappingStatus
from calsync.utils.timeutils import utcnow


class CalendarEventMapping(Base):
    """Links one booking to the remote event mirrored on one calendar connection.

    State machine::

        pending --success--> synced
        pending/synced/failed --failure--> failed (retry_count += 1)
        failed --retry ok--> synced (or deleted when the failed action was a delete)
        any --remote removed--> deleted

    A failed mapping stays retry-eligible until retry_count reaches MAX_RETRIES.
    """
    __tablename__ = "calendar_event_mappings"
    __table_args__ = (
        UniqueConstraint("booking_id", "calendar_connection_id", name="uq_event_mapping_booking_connection"),
    )

    MAX_RETRIES = 3

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=False)
    calendar_connection_id = Column(Uuid, ForeignKey("calendar_connections.id"), nullable=False)

    external_event_id = Column(String, nullable=True)
    external_calendar_id = Column(String, nullable=True)
    # CalDAV UID chosen before the first PUT so retried creates reuse it
    event_uid = Column(String, nullable=True)

    status = Column(String, default=MappingStatus.PENDING.value, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    # Operation a failed mapping still owes the remote calendar
    pending_action = Column(String, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    booking = relationship("Booking", back_populates="event_mappings")
    connection = relationship("CalendarConnection", back_populates="event_mappings")
    sync_logs = relationship("CalendarSyncLog", back_populates="mapping")

    def mark_synced(self, external_event_id=None, external_calendar_id=None):
        if external_event_id:
            if self.external_event_id and self.external_event_id != external_event_id:
                raise ValueError(
                    f"external_event_id is immutable (have {self.external_event_id}, got {external_event_id})"
                )
            self.external_event_id = external_event_id
        if external_calendar_id and not self.external_calendar_id:
            self.external_calendar_id = external_calendar_id
        self.status = MappingStatus.SYNCED.value
        self.retry_count = 0
        self.last_error = None
        self.pending_action = None
        self.last_synced_at = utcnow()

    def mark_failed(self, message=None, action=None):
        self.status = MappingStatus.FAILED.value
        if action is not None:
            self.pending_action = getattr(action, "value", action)
        self.retry_count = (self.retry_count or 0) + 1
        self.last_error = message

    def mark_deleted(self):
        self.status = MappingStatus.DELETED.value
        self.pending_action = None
        self.last_synced_at = utcnow()

    def can_retry(self) -> bool:
        return self.status == MappingStatus.FAILED.value and (self.retry_count or 0) < self.MAX_RETRIES

    @property
    def terminally_failed(self) -> bool:
        return self.status == MappingStatus.FAILED.value and (self.retry_count or 0) >= self.MAX_RETRIES

    @classmethod
    def retry_eligible(cls, db: Session, business_id=None, limit: int = 50):
        """Failed mappings under the retry cap whose connection is still active"""
        from calsync.models.booking import Booking
        from calsync.models.calendar_connection import CalendarConnection

        query = (
            db.query(cls)
            .join(CalendarConnection, cls.calendar_connection_id == CalendarConnection.id)
            .filter(
                cls.status == MappingStatus.FAILED.value,
                cls.retry_count < cls.MAX_RETRIES,
                CalendarConnection.active.is_(True),
            )
        )
        if business_id is not None:
            query = query.join(Booking, cls.booking_id == Booking.id).filter(Booking.business_id == business_id)
        return query.order_by(cls.updated_at.asc()).limit(limit).all()

    def __repr__(self):
        return f"<CalendarEventMapping(id={self.id}, status={self.status}, retry_count={self.retry_count})>"
