# ===== calsync/models/calendar_sync_log.py =====
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, JSON, Uuid
from sqlalchemy.orm import Session, relationship
import uuid

from calsync.models.base import Base
from calsync.schemas.calendar_events import SyncOutcome
from calsync.utils.timeutils import utcnow


class CalendarSyncLog(Base):
    """Append-only audit trail of sync attempts. Never read by sync logic."""
    __tablename__ = "calendar_sync_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=True)
    calendar_connection_id = Column(Uuid, ForeignKey("calendar_connections.id"), nullable=True)
    calendar_event_mapping_id = Column(Uuid, ForeignKey("calendar_event_mappings.id"), nullable=True)

    provider = Column(String, nullable=True)
    action = Column(String, nullable=False)  # create, update, delete, import
    outcome = Column(String, nullable=False)  # success, failure
    message = Column(Text, nullable=True)
    details = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    mapping = relationship("CalendarEventMapping", back_populates="sync_logs")

    @classmethod
    def scoped(cls, db: Session, business_id=None, since=None, provider=None):
        query = db.query(cls)
        if business_id is not None:
            query = query.filter(cls.business_id == business_id)
        if since is not None:
            query = query.filter(cls.created_at >= since)
        if provider is not None:
            query = query.filter(cls.provider == provider)
        return query

    @classmethod
    def success_rate(cls, db: Session, business_id=None, since=None, provider=None) -> float:
        query = cls.scoped(db, business_id, since, provider)
        total = query.count()
        if total == 0:
            return 0.0
        successful = query.filter(cls.outcome == SyncOutcome.SUCCESS.value).count()
        return round(successful * 100.0 / total, 2)

    @classmethod
    def recent_failures(cls, db: Session, business_id=None, since=None, limit: int = 10):
        return (
            cls.scoped(db, business_id, since)
            .filter(cls.outcome == SyncOutcome.FAILURE.value)
            .order_by(cls.created_at.desc())
            .limit(limit)
            .all()
        )

    def __repr__(self):
        return f"<CalendarSyncLog(action={self.action}, outcome={self.outcome})>"
