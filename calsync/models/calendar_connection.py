# ===== calsync/models/calendar_connection.py =====
from datetime import timedelta
from typing import Optional

from sqlalchemy import Column, String, Boolean, DateTime, LargeBinary, ForeignKey, Text, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from calsync.models.base import Base
from calsync.schemas.calendar_events import CalendarProvider, CaldavProvider
from calsync.utils.encryption import encrypt_token, decrypt_token
from calsync.utils.timeutils import utcnow, as_utc

GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
MICROSOFT_CALENDAR_SCOPE = "Calendars.ReadWrite"

_DISPLAY_NAMES = {
    CalendarProvider.GOOGLE.value: "Google Calendar",
    CalendarProvider.MICROSOFT.value: "Microsoft Outlook",
    CaldavProvider.ICLOUD.value: "iCloud Calendar",
    CaldavProvider.NEXTCLOUD.value: "Nextcloud Calendar",
    CaldavProvider.GENERIC.value: "CalDAV Calendar",
}


class CalendarConnection(Base):
    __tablename__ = "calendar_connections"
    __table_args__ = (
        # At most one connection per staff member and provider
        UniqueConstraint("staff_member_id", "provider", name="uq_calendar_connection_staff_provider"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=False)
    staff_member_id = Column(Uuid, ForeignKey("staff_members.id"), nullable=False)

    provider = Column(String, nullable=False)  # 'google', 'microsoft', 'caldav'
    caldav_provider = Column(String, nullable=True)  # 'icloud', 'nextcloud', 'generic'
    active = Column(Boolean, default=True, nullable=False)

    # Provider account id, used to recognise reconnects of the same account
    uid = Column(String, nullable=True)
    scopes = Column(Text, nullable=True)

    # OAuth tokens (Fernet encrypted)
    access_token_encrypted = Column(LargeBinary)
    refresh_token_encrypted = Column(LargeBinary)
    token_expires_at = Column(DateTime(timezone=True))

    # CalDAV credentials
    caldav_username = Column(String, nullable=True)
    caldav_password_encrypted = Column(LargeBinary)
    caldav_url = Column(String, nullable=True)

    connected_at = Column(DateTime(timezone=True))
    last_synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    business = relationship("Business")
    staff_member = relationship("StaffMember", foreign_keys=[staff_member_id])
    event_mappings = relationship(
        "CalendarEventMapping",
        back_populates="connection",
        cascade="all, delete-orphan",
    )
    external_events = relationship(
        "ExternalCalendarEvent",
        back_populates="connection",
        cascade="all, delete-orphan",
    )

    # ---- decrypted credential accessors ----

    @property
    def access_token(self) -> Optional[str]:
        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: Optional[str]):
        self.access_token_encrypted = encrypt_token(value)

    @property
    def refresh_token(self) -> Optional[str]:
        return decrypt_token(self.refresh_token_encrypted)

    @refresh_token.setter
    def refresh_token(self, value: Optional[str]):
        self.refresh_token_encrypted = encrypt_token(value)

    @property
    def caldav_password(self) -> Optional[str]:
        return decrypt_token(self.caldav_password_encrypted)

    @caldav_password.setter
    def caldav_password(self, value: Optional[str]):
        self.caldav_password_encrypted = encrypt_token(value)

    # ---- state helpers ----

    @property
    def is_oauth_provider(self) -> bool:
        return self.provider in (CalendarProvider.GOOGLE.value, CalendarProvider.MICROSOFT.value)

    @property
    def provider_display_name(self) -> str:
        if self.provider == CalendarProvider.CALDAV.value:
            return _DISPLAY_NAMES.get(self.caldav_provider or "generic", "CalDAV Calendar")
        return _DISPLAY_NAMES.get(self.provider, self.provider)

    def token_expired(self, now=None, margin_seconds: int = 0) -> bool:
        if not self.is_oauth_provider or self.token_expires_at is None:
            return False
        now = now or utcnow()
        return as_utc(self.token_expires_at) <= now + timedelta(seconds=margin_seconds)

    def needs_refresh(self) -> bool:
        """Expired but recoverable without asking the user to reconnect"""
        return self.is_oauth_provider and self.refresh_token_encrypted is not None

    def has_calendar_permissions(self) -> bool:
        """Exact scope match; 'https://evil/?x=<scope>' must not pass"""
        if self.provider == CalendarProvider.CALDAV.value:
            return True
        granted = {s.strip() for s in (self.scopes or "").replace(" ", ",").split(",") if s.strip()}
        if self.provider == CalendarProvider.GOOGLE.value:
            return GOOGLE_CALENDAR_SCOPE in granted
        if self.provider == CalendarProvider.MICROSOFT.value:
            return MICROSOFT_CALENDAR_SCOPE in granted or \
                f"https://graph.microsoft.com/{MICROSOFT_CALENDAR_SCOPE}" in granted
        return False

    def deactivate(self):
        self.active = False

    def mark_synced(self, now=None):
        self.last_synced_at = now or utcnow()

    def __repr__(self):
        return f"<CalendarConnection(id={self.id}, provider={self.provider}, active={self.active})>"
