"""Health checks and monitoring endpoints"""
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from calsync.config.database import get_db
from calsync.config.redis import get_redis
from calsync.models import CalendarConnection, CalendarEventMapping
from calsync.schemas.calendar_events import MappingStatus

health_router = APIRouter()


@health_router.get("/")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "calsync"}


@health_router.get("/detailed")
def detailed_health_check(db: Session = Depends(get_db), redis_client=Depends(get_redis)):
    """Detailed health check with dependencies"""
    checks = {
        "api": "healthy",
        "database": "unknown",
        "redis": "unknown",
        "overall": "unknown"
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    try:
        redis_client.ping()
        checks["redis"] = "healthy"
    except Exception as e:
        checks["redis"] = f"unhealthy: {str(e)}"

    if all(status == "healthy" for status in checks.values() if status != "unknown"):
        checks["overall"] = "healthy"
    else:
        checks["overall"] = "degraded"

    return checks


@health_router.get("/sync")
def sync_backlog(db: Session = Depends(get_db)):
    """Connection and retry backlog as seen by the sync workers"""
    failed = db.query(CalendarEventMapping).filter(CalendarEventMapping.status == MappingStatus.FAILED.value)
    return {
        "active_connections": db.query(CalendarConnection).filter(CalendarConnection.active.is_(True)).count(),
        "inactive_connections": db.query(CalendarConnection).filter(CalendarConnection.active.is_(False)).count(),
        "awaiting_retry": failed.filter(CalendarEventMapping.retry_count < CalendarEventMapping.MAX_RETRIES).count(),
        "terminally_failed": failed.filter(CalendarEventMapping.retry_count >= CalendarEventMapping.MAX_RETRIES).count(),
    }
