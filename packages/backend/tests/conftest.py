"""Test fixtures: a throw-away SQLite database and a fresh hub per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own SQLite file (tmp_path) with every table created
   from the ORM models, so tests never see each other's rows.
2. NullPool gives every session its own connection. Concurrency tests
   open several sessions at once, exactly like concurrent requests.
3. WAL journal mode lets a reader and a writer overlap without
   "database is locked".
4. The HTTP client overrides get_db, auth, the hub and the push
   notifier. The caller is chosen per request with an X-Test-User header.
"""

from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import Header
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from nearhelp.db.models import Base, Post, User
from nearhelp.realtime.hub import RealtimeHub
from nearhelp.realtime.rooms import Connection, notification_room
from nearhelp.services.delivery import DeliveryDispatcher
from nearhelp.services.push import PushNotifier

SELLER = "seller-1"
BUYER = "buyer-1"
POST = "post-1"


@pytest_asyncio.fixture()
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'nearhelp.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    """Session used to seed data and by the dispatcher under test."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def hub():
    hub = RealtimeHub()
    yield hub
    await hub.tasks.cancel_all()


@pytest.fixture
def push():
    """A configured notifier whose transport is mocked out."""
    notifier = PushNotifier(
        vapid_private_key="test-private-key",
        vapid_email="push@nearhelp.test",
        icon="/icon.png",
        timeout=1.0,
    )
    notifier.send = AsyncMock(return_value=True)
    return notifier


@pytest_asyncio.fixture()
async def dispatcher(db_session, hub, push, session_factory):
    return DeliveryDispatcher(db_session, hub, push=push, session_factory=session_factory)


# ─── Seed data ───────────────────────────────────────────


@pytest.fixture
def make_user(db_session):
    async def _make(
        user_id: str,
        username: Optional[str] = None,
        *,
        token: Optional[str] = None,
        enabled: bool = False,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        radius_km: float = 10.0,
    ) -> str:
        db_session.add(
            User(
                id=user_id,
                username=username or user_id,
                notification_token=token,
                notification_enabled=enabled,
                notification_radius_km=radius_km,
                latitude=latitude,
                longitude=longitude,
            )
        )
        await db_session.commit()
        return user_id

    return _make


@pytest.fixture
def make_post(db_session):
    async def _make(
        post_id: str,
        owner_id: str,
        title: str = "Help moving a sofa",
        *,
        people_count: Optional[int] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> str:
        db_session.add(
            Post(
                id=post_id,
                user_id=owner_id,
                title=title,
                people_count=people_count,
                latitude=latitude,
                longitude=longitude,
            )
        )
        await db_session.commit()
        return post_id

    return _make


@pytest_asyncio.fixture()
async def market(make_user, make_post):
    """One seller with one post and one interested buyer."""
    await make_user(SELLER, "Sam")
    await make_user(BUYER, "Bea")
    await make_post(POST, SELLER, "Help moving a sofa")
    return SimpleNamespace(post_id=POST, seller_id=SELLER, buyer_id=BUYER)


@pytest.fixture
def connect(hub):
    """Register a live connection for a user, optionally joined and online."""

    async def _connect(user_id: str, *rooms: str, online: bool = True) -> Connection:
        connection = Connection(user_id=user_id)
        hub.connect(connection)
        hub.rooms.join(connection.connection_id, notification_room(user_id))
        for room in rooms:
            hub.rooms.join(connection.connection_id, room)
        if online:
            await hub.user_online(user_id, connection.connection_id)
        connection.pending_frames()
        return connection

    return _connect


# ─── HTTP client ─────────────────────────────────────────


@pytest_asyncio.fixture()
async def client(session_factory, hub, push):
    """HTTP client with the app's dependencies overridden for testing.

    Learn: get_current_user is replaced by a header lookup so tests can
    act as any user without minting tokens. Requests default to the
    seller of the `market` fixture.
    """
    from nearhelp.auth.dependencies import CurrentIdentity, get_current_user
    from nearhelp.db.engine import get_db, get_session_factory
    from nearhelp.main import app
    from nearhelp.realtime.hub import get_hub
    from nearhelp.services.push import get_push_notifier

    async def override_get_db():
        async with session_factory() as session:
            yield session

    def override_get_current_user(x_test_user: str = Header(SELLER)):
        return CurrentIdentity(user_id=x_test_user)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_push_notifier] = lambda: push
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauthenticated_client(session_factory):
    """HTTP client WITHOUT the auth override, for the real Bearer flow."""
    from nearhelp.db.engine import get_db
    from nearhelp.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
