"""
API v1 router setup
"""
from fastapi import APIRouter

from calsync.api.v1 import calendar

api_v1_router = APIRouter()

api_v1_router.include_router(
    calendar.router,
    prefix="/calendar",
    tags=["Calendar"]
)


@api_v1_router.get("/", tags=["Info"])
async def api_info():
    """API information and available endpoints"""
    return {
        "version": "1.0",
        "endpoints": {
            "oauth": "/api/v1/calendar/{google,microsoft}/authorize",
            "caldav": "/api/v1/calendar/caldav/connect",
            "connections": "/api/v1/calendar/connections",
            "sync": "/api/v1/calendar/sync",
        }
    }
