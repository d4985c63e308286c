# ===== calsync/models/booking.py =====
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from calsync.models.base import Base
from calsync.schemas.calendar_events import BookingSyncStatus
import uuid


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # References
    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=False)
    staff_member_id = Column(Uuid, ForeignKey("staff_members.id"), nullable=True)

    # Booking details
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    service_name = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String, default="confirmed")  # pending, confirmed, cancelled, completed

    # Customer info
    customer_full_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)

    # Aggregate of all calendar connections, written by SyncCoordinator
    calendar_event_status = Column(String, default=BookingSyncStatus.NOT_SYNCED.value)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    business = relationship("Business")
    staff_member = relationship("StaffMember")
    event_mappings = relationship("CalendarEventMapping", back_populates="booking")

    @property
    def business_address(self):
        return self.business.address if self.business else None

    @property
    def business_time_zone(self):
        return (self.business.time_zone if self.business else None) or "UTC"

    def __repr__(self):
        return f"<Booking(id={self.id}, start_time={self.start_time})>"
