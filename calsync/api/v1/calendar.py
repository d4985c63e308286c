# ============================================================================
# FILE: calsync/api/v1/calendar.py
# Calendar connection and sync endpoints - thin HTTP layer
# IMPORTANT: Specific routes MUST come before parameterized routes
# ============================================================================
import logging
from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from calsync.config.database import get_db
from calsync.config.redis import get_redis
from calsync.models import Booking, CalendarConnection, StaffMember
from calsync.schemas.calendar_events import (
    AuthorizationUrlResponse,
    CaldavConnectRequest,
    CaldavConnectResponse,
    CalendarConnectionResponse,
    CalendarProvider,
    OAuthAuthorizeRequest,
    RetryFailedResponse,
    SyncAction,
    SyncStatisticsResponse,
    SyncTriggerResponse,
)
from calsync.services.calendar.connections import (
    CaldavConnectionFailed,
    StaffMemberNotFound,
    connect_caldav_account,
    deactivate_connection,
)
from calsync.services.calendar.errors import OAuthError
from calsync.services.calendar.oauth_handler import OAuthHandler
from calsync.services.calendar.sync_coordinator import SyncCoordinator
from calsync.tasks import calendar_tasks
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["calendar"])


def get_oauth_handler(db: Session = Depends(get_db), redis_client=Depends(get_redis)) -> OAuthHandler:
    return OAuthHandler(db, redis_client=redis_client)


def connection_response(connection: CalendarConnection) -> CalendarConnectionResponse:
    staff_member = connection.staff_member
    return CalendarConnectionResponse(
        id=str(connection.id),
        provider=connection.provider,
        caldav_provider=connection.caldav_provider,
        display_name=connection.provider_display_name,
        active=connection.active,
        is_default=bool(staff_member and staff_member.default_calendar_connection_id == connection.id),
        connected_at=connection.connected_at,
        last_synced_at=connection.last_synced_at,
    )


def _authorize(handler: OAuthHandler, provider: CalendarProvider, request: OAuthAuthorizeRequest):
    try:
        url = handler.authorization_url(provider, request.business_id, request.staff_member_id)
    except OAuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"authorization_url": url}


def _callback(handler: OAuthHandler, provider: CalendarProvider, code: Optional[str], state: Optional[str],
              error: Optional[str]):
    if error:
        logger.warning(f"{provider.value} authorization was declined: {error}")
        raise HTTPException(status_code=400, detail=f"Authorization failed: {error}")
    try:
        connection = handler.handle_callback(provider, code, state)
    except OAuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StaffMemberNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "connection": connection_response(connection)}


# ========== GOOGLE CALENDAR ==========

@router.post("/google/authorize", response_model=AuthorizationUrlResponse)
def initiate_google_auth(request: OAuthAuthorizeRequest, handler: OAuthHandler = Depends(get_oauth_handler)):
    """Returns authorization URL for the staff member to visit"""
    return _authorize(handler, CalendarProvider.GOOGLE, request)


@router.get("/google/callback")
def google_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        handler: OAuthHandler = Depends(get_oauth_handler),
):
    """Google redirects here after authorization"""
    return _callback(handler, CalendarProvider.GOOGLE, code, state, error)


# ========== MICROSOFT CALENDAR ==========

@router.post("/microsoft/authorize", response_model=AuthorizationUrlResponse)
def initiate_microsoft_auth(request: OAuthAuthorizeRequest, handler: OAuthHandler = Depends(get_oauth_handler)):
    """Returns authorization URL for the staff member to visit"""
    return _authorize(handler, CalendarProvider.MICROSOFT, request)


@router.get("/microsoft/callback")
def microsoft_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        handler: OAuthHandler = Depends(get_oauth_handler),
):
    """Microsoft redirects here after authorization"""
    return _callback(handler, CalendarProvider.MICROSOFT, code, state, error)


# ========== CALDAV ==========

@router.post("/caldav/connect", response_model=CaldavConnectResponse)
def connect_caldav(request: CaldavConnectRequest, db: Session = Depends(get_db)):
    """Test CalDAV credentials by discovering calendars, then store the connection"""
    try:
        connection, test_result = connect_caldav_account(
            db,
            business_id=request.business_id,
            staff_member_id=request.staff_member_id,
            username=request.username,
            password=request.password,
            server_url=request.server_url,
            caldav_provider=request.caldav_provider,
        )
    except StaffMemberNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CaldavConnectionFailed as e:
        db.rollback()
        raise HTTPException(status_code=400, detail={"message": e.message, "error_kind": e.error_kind})

    db.commit()
    return {
        "success": True,
        "message": test_result["message"],
        "connection": connection_response(connection),
        "calendar_urls": test_result.get("calendar_urls", []),
    }


# ========== CONNECTIONS ==========

@router.get("/connections", response_model=List[CalendarConnectionResponse])
def list_connections(
        business_id: UUID = Query(...),
        staff_member_id: Optional[UUID] = Query(None),
        include_inactive: bool = Query(False),
        db: Session = Depends(get_db),
):
    query = db.query(CalendarConnection).filter(CalendarConnection.business_id == business_id)
    if staff_member_id:
        query = query.filter(CalendarConnection.staff_member_id == staff_member_id)
    if not include_inactive:
        query = query.filter(CalendarConnection.active.is_(True))
    return [connection_response(c) for c in query.order_by(CalendarConnection.created_at.asc()).all()]


@router.delete("/connections/{connection_id}", response_model=CalendarConnectionResponse)
def disconnect(connection_id: UUID = Path(...), db: Session = Depends(get_db)):
    """Deactivate a connection; its mappings and audit history are kept"""
    connection = db.get(CalendarConnection, connection_id)
    if not connection:
        raise HTTPException(status_code=404, detail="Calendar connection not found")

    deactivate_connection(db, connection, "disconnected by user")
    staff_member = db.get(StaffMember, connection.staff_member_id)
    if staff_member and staff_member.default_calendar_connection_id == connection.id:
        staff_member.default_calendar_connection_id = None
    db.commit()
    return connection_response(connection)


# ========== SYNC ==========

@router.post("/sync/retry-failed", response_model=RetryFailedResponse)
def retry_failed_syncs(
        business_id: Optional[UUID] = Query(None),
        limit: int = Query(50, ge=1, le=500),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis),
):
    """Run the retry sweep inline and report how it went"""
    coordinator = calendar_tasks.build_coordinator(db, redis_client)
    return coordinator.retry_failed_syncs(business_id=business_id, limit=limit)


@router.post("/sync/bookings/{booking_id}", response_model=SyncTriggerResponse)
def trigger_booking_sync(
        booking_id: UUID = Path(...),
        action: SyncAction = Query(SyncAction.CREATE),
        db: Session = Depends(get_db),
):
    """Queue a sync for one booking; create and update both upsert"""
    booking = db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    if action == SyncAction.DELETE:
        task = calendar_tasks.delete_booking.delay(str(booking.id))
    elif action == SyncAction.UPDATE:
        task = calendar_tasks.update_booking.delay(str(booking.id))
    elif action == SyncAction.CREATE:
        task = calendar_tasks.sync_booking.delay(str(booking.id))
    else:
        raise HTTPException(status_code=400, detail=f"Unsupported sync action: {action.value}")

    logger.info(f"Queued calendar {action.value} for booking {booking.id} as task {task.id}")
    return {"booking_id": str(booking.id), "task_id": task.id, "action": action}


@router.get("/sync/statistics", response_model=SyncStatisticsResponse)
def sync_statistics(
        business_id: Optional[UUID] = Query(None),
        days: int = Query(7, ge=1, le=365),
        db: Session = Depends(get_db),
):
    since = utcnow() - timedelta(days=days)
    return SyncCoordinator(db).sync_statistics(business_id=business_id, since=since)
