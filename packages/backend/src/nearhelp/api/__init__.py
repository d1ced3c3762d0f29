"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Handlers that need the user id
depend on get_current_user again; FastAPI caches it per request.
"""

from fastapi import APIRouter, Depends

from nearhelp.api.chats import router as chats_router
from nearhelp.api.health import router as health_router
from nearhelp.api.notifications import router as notifications_router
from nearhelp.api.posts import router as posts_router
from nearhelp.auth.dependencies import get_current_user

_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes: no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes: require a valid JWT
api_router.include_router(chats_router, tags=["chats"], dependencies=_auth)
api_router.include_router(posts_router, tags=["posts", "helpers"], dependencies=_auth)
api_router.include_router(notifications_router, tags=["notifications"], dependencies=_auth)
