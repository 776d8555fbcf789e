"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of parley.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from parley.database.models import Base  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Parley tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the rate limiter and hub).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Broadcast capture
# ---------------------------------------------------------------------------
class RecordingBroadcaster:
    """Broadcaster that keeps every published event in memory."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def types(self, topic: str | None = None) -> list[str]:
        return [
            str(e.event_type) for e in self.events
            if topic is None or e.topic == topic
        ]

    def of_type(self, event_type: str):
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def recorder() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def events(recorder):
    from parley.services.broadcast import EventPublisher

    return EventPublisher(recorder)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def run(coro):
    """Run a coroutine to completion on a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def make_community(engine: Engine, creator: str = "creator", name: str = "Study Circle", **settings):
    """Create an already-approved community owned by *creator*."""
    from parley.services.community_service import CommunitySpec, create

    return create(engine, CommunitySpec(name=name, **settings), creator, seeded=True, now=T0)


def add_member(engine: Engine, community_id: int, user_id: str, *, now: datetime = T0):
    from parley.services.membership_service import join

    return join(engine, community_id, user_id, now=now)


def add_moderator(engine: Engine, community, user_id: str, permissions=None, *, now: datetime = T0):
    """Join *user_id* and promote them (all capabilities unless given)."""
    from parley.engine.permissions import ALL_CAPABILITIES, Actor
    from parley.services.membership_service import promote

    add_member(engine, community.id, user_id, now=now)
    return promote(
        engine, community.id, Actor(community.creator_id), user_id,
        permissions=ALL_CAPABILITIES if permissions is None else permissions,
        now=now,
    )


def member_count(engine: Engine, community_id: int) -> int:
    from parley.database.models import Community

    with Session(engine) as session:
        return session.get(Community, community_id).member_count


def active_count(engine: Engine, community_id: int) -> int:
    from sqlalchemy import func, select

    from parley.database.models import MemberStatus, Membership

    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(Membership).where(
                Membership.community_id == community_id,
                Membership.status == MemberStatus.ACTIVE,
            )
        )


# ---------------------------------------------------------------------------
# Tokens / API client
# ---------------------------------------------------------------------------
def make_token(sub: str, role: str = "user") -> str:
    """Create an identity-service style JWT for *sub*."""
    import jwt

    from parley.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": sub, "role": role}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def make_admin_token(sub: str = "99999") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    return make_token(sub, role="admin")


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


@pytest.fixture
def app_config():
    from parley.config import ParleyConfig

    return ParleyConfig(reconcile_interval_seconds=0, ws_heartbeat_seconds=0)


@pytest.fixture
def client(db_engine, app_config, events):
    """FastAPI TestClient wired to the in-memory engine and a recording publisher.

    The client is not used as a context manager, so the app lifespan
    (which builds the production engine) never runs.
    """
    from fastapi.testclient import TestClient

    from parley.api.deps import get_config, get_engine, get_publisher
    from parley.api.main import app
    from parley.api.rate_limit import configure_rate_limiter

    configure_rate_limiter(engine=db_engine)
    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: app_config
    app.dependency_overrides[get_publisher] = lambda: events
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
