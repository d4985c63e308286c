# calsync/models/business.py
"""
Business and staff records as seen by calendar sync.

Owned by the surrounding booking application; calendar sync reads them and
only ever writes StaffMember.default_calendar_connection_id.
"""
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Uuid
from sqlalchemy.sql import func
import uuid
from calsync.models.base import Base


class Business(Base):
    __tablename__ = "businesses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    address = Column(String, nullable=True)
    time_zone = Column(String(50), default="UTC")

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Business(id={self.id}, name={self.name})>"


class StaffMember(Base):
    __tablename__ = "staff_members"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    active = Column(Boolean, default=True)

    # Circular with calendar_connections.staff_member_id
    default_calendar_connection_id = Column(
        Uuid,
        ForeignKey("calendar_connections.id", use_alter=True, name="fk_staff_default_calendar_connection"),
        nullable=True,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<StaffMember(id={self.id}, name={self.name})>"
