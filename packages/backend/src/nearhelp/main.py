"""FastAPI application factory.

Learn: App factory pattern: create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (Redis room relay,
background push deliveries, database engine). Middleware, CORS, HTTP
routers and the /ws socket are all registered here.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nearhelp import __version__
from nearhelp.api import api_router
from nearhelp.config import settings
from nearhelp.realtime.hub import hub

logger = structlog.get_logger()

SHUTDOWN_DRAIN_SECONDS = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. Redis is optional: without it rooms are delivered locally
    and the service runs as a single process.
    """
    logger.info(
        "nearhelp.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from nearhelp.realtime.pubsub import RedisRoomRelay, close_redis, init_redis

    relay_task = None
    try:
        redis = await init_redis()
        relay = RedisRoomRelay(
            redis,
            hub.rooms,
            settings.redis_channel,
            retry_seconds=settings.redis_retry_seconds,
        )
        # attaches itself as the room publisher once subscribed
        relay_task = asyncio.create_task(relay.listen())
        logger.info("nearhelp.redis_relay_started", url=settings.redis_url)
    except Exception as e:
        logger.warning("nearhelp.redis_unavailable", error=str(e))

    yield

    # Shutdown
    logger.info("nearhelp.shutdown", pending_deliveries=len(hub.tasks))

    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
    hub.rooms.publisher = None

    # Let in-flight pushes finish, then give up on the rest
    await hub.tasks.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    await hub.tasks.cancel_all()

    await close_redis()

    from nearhelp.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="NearHelp Realtime",
        description="Chat, presence and notification delivery for NearHelp",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Starlette middleware executes in reverse order of registration.
    from nearhelp.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from nearhelp.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: nearhelp.main:app)
app = create_app()
