# calsync/schemas/calendar_events.py
from __future__ import annotations
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


class CalendarProvider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    CALDAV = "caldav"


class CaldavProvider(str, Enum):
    ICLOUD = "icloud"
    NEXTCLOUD = "nextcloud"
    GENERIC = "generic"


class MappingStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    DELETED = "deleted"


class BookingSyncStatus(str, Enum):
    NOT_SYNCED = "not_synced"
    SYNCED = "synced"
    SYNC_PENDING = "sync_pending"
    SYNC_FAILED = "sync_failed"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    IMPORT = "import"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class CaldavConnectRequest(BaseModel):
    """CalDAV account credentials submitted by a staff member"""
    business_id: str = Field(..., description="Business identifier")
    staff_member_id: str = Field(..., description="Staff member identifier")
    username: str = Field(..., min_length=1, description="CalDAV username or Apple ID")
    password: str = Field(..., min_length=1, description="CalDAV password or app-specific password")
    server_url: Optional[str] = Field(None, description="CalDAV server URL")
    caldav_provider: Optional[CaldavProvider] = Field(None, description="Explicit server flavour")

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: Optional[str]) -> Optional[str]:
        if v and not v.lower().startswith(("http://", "https://")):
            raise ValueError("Server URL must start with http:// or https://")
        return v


class CalendarConnectionResponse(BaseModel):
    """Calendar connection as exposed to the dashboard"""
    id: str
    provider: CalendarProvider
    caldav_provider: Optional[CaldavProvider] = None
    display_name: str
    active: bool
    is_default: bool = False
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class SyncFailure(BaseModel):
    action: SyncAction
    message: Optional[str] = None
    created_at: datetime


class SyncStatisticsResponse(BaseModel):
    total_attempts: int
    successful: int
    failed: int
    success_rate: float
    by_provider: dict = Field(default_factory=dict)
    recent_failures: List[SyncFailure] = Field(default_factory=list)


class RetryFailedResponse(BaseModel):
    total_attempted: int
    successful: int
    failed: int


class OAuthAuthorizeRequest(BaseModel):
    business_id: str = Field(..., description="Business identifier")
    staff_member_id: str = Field(..., description="Staff member whose calendar is being connected")


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str


class CaldavConnectResponse(BaseModel):
    success: bool
    message: str
    connection: CalendarConnectionResponse
    calendar_urls: List[str] = Field(default_factory=list)


class SyncTriggerResponse(BaseModel):
    booking_id: str
    task_id: str
    action: SyncAction
