"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and
the database is reachable. Redis is optional, so a missing relay is
reported but does not make the service degraded.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp import __version__
from nearhelp.db.engine import get_db
from nearhelp.realtime.hub import RealtimeHub, get_hub

router = APIRouter()


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
):
    """Check server health, database connectivity and live socket counts."""
    checks = {"server": "ok", "version": __version__}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    checks["relay"] = "redis" if hub.rooms.publisher is not None else "local"
    status = "healthy" if checks["database"] == "ok" else "degraded"

    return {
        "status": status,
        **checks,
        "connections": len(hub.rooms),
        "online_users": len(hub.presence),
    }
