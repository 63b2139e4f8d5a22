"""
Test fixtures for the Operations Ledger API test suite.

This module provides shared fixtures used across all test files:

  - db_engine / session_factory / db_session: Fresh in-memory SQLite
    database for each test
  - lock_store: In-memory LockStore that records every call
  - client: Async HTTP test client (unauthenticated)
  - authenticated_client / second_authenticated_client: two independent
    MEMBER clients, each with its own JWT
  - admin_client: a client logged in as an ADMIN user
  - worker_headers / cron_headers: shared-secret headers for machine callers

Key design decisions:
  - In-memory SQLite with a StaticPool, so the request sessions, the
    sweeps' per-operation sessions and the test's own session all see the
    same database. Tests commit their own writes before calling the API
    or a sweep.
  - get_db, get_session_factory and get_lock_store are overridden, so the
    application code runs exactly as it does in production.
  - Users are created through the real signup endpoint. Admins are then
    promoted directly in the database, the way an operator would.
"""

import os

# Settings are read at import time; these must exist before app imports
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("WORKER_SECRET", "test-worker-secret")

import uuid
from contextlib import AsyncExitStack

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.database import Base, get_db, get_session_factory
from app.lock_store import get_lock_store
from app.main import app
from app.models.account import Account
from app.models.user import User, UserType
from app.security import hash_password
from app.services import ledger_service


# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"


class RecordingLockStore:
    """LockStore double that records calls; set `fail = True` to simulate an outage."""

    def __init__(self):
        self.released: list[str] = []
        self.heartbeats: dict[str, tuple[dict, int]] = {}
        self.cleared: list[str] = []
        self.fail = False

    async def release(self, resource_id: str) -> None:
        if self.fail:
            raise ConnectionError("lock store unavailable")
        self.released.append(resource_id)

    async def touch_heartbeat(self, operation_id: str, payload: dict, ttl_seconds: int) -> None:
        if self.fail:
            raise ConnectionError("lock store unavailable")
        self.heartbeats[operation_id] = (payload, ttl_seconds)

    async def clear_heartbeat(self, operation_id: str) -> None:
        if self.fail:
            raise ConnectionError("lock store unavailable")
        self.cleared.append(operation_id)


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def lock_store():
    return RecordingLockStore()


@pytest_asyncio.fixture
async def client_factory(session_factory, lock_store):
    """
    Build independent HTTP clients against the app with test dependencies.

    Each call returns a new AsyncClient, so headers set on one never leak
    into another.
    """
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_lock_store] = lambda: lock_store

    async with AsyncExitStack() as stack:
        async def make_client() -> AsyncClient:
            return await stack.enter_async_context(
                AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
            )
        yield make_client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(client_factory):
    """Unauthenticated client."""
    return await client_factory()


async def _signup_client(client_factory, email: str, password: str) -> AsyncClient:
    ac = await client_factory()
    response = await ac.post("/auth/signup", json={"email": email, "password": password})
    assert response.status_code == 201, f"Signup failed: {response.text}"
    ac.headers["Authorization"] = f"Bearer {response.json()['token']}"
    return ac


@pytest_asyncio.fixture
async def authenticated_client(client_factory):
    """Client for a freshly signed-up MEMBER."""
    return await _signup_client(client_factory, "testuser@example.com", "SecurePass123!")


@pytest_asyncio.fixture
async def second_authenticated_client(client_factory):
    """
    A second, independent MEMBER client for cross-user authorization tests.
    """
    return await _signup_client(client_factory, "seconduser@example.com", "SecurePass456!")


@pytest_asyncio.fixture
async def admin_client(client_factory, session_factory):
    """
    Client logged in as an ADMIN.

    Signs up normally, then promotes the user directly in the database;
    admin provisioning is an operator action, not self-service.
    """
    ac = await client_factory()
    signup = await ac.post(
        "/auth/signup",
        json={"email": "admin@example.com", "password": "AdminPass123!"},
    )
    assert signup.status_code == 201
    user_id = uuid.UUID(signup.json()["user_id"])

    async with session_factory() as session:
        await session.execute(
            update(User).where(User.id == user_id).values(user_type=UserType.ADMIN)
        )
        await session.commit()

    login = await ac.post(
        "/auth/login",
        json={"email": "admin@example.com", "password": "AdminPass123!"},
    )
    ac.headers["Authorization"] = f"Bearer {login.json()['token']}"
    return ac


@pytest.fixture
def worker_headers():
    return {"Authorization": f"Bearer {settings.WORKER_SECRET}"}


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {settings.CRON_SECRET}"}


# ---------------------------------------------------------------------------
# Service-level helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def make_account(db_session):
    """
    Create a member and account directly, optionally funded by a DEPOSIT.

    Usage:
        account = await make_account(balance_cents=5000)
    """
    counter = {"n": 0}

    async def _make(balance_cents: int = 0) -> Account:
        counter["n"] += 1
        user = User(
            email=f"member{counter['n']}@example.com",
            hashed_password=hash_password("SecurePass123!"),
            user_type=UserType.MEMBER,
        )
        db_session.add(user)
        await db_session.flush()
        account = Account(user_id=user.id)
        db_session.add(account)
        await db_session.flush()
        if balance_cents:
            await ledger_service.deposit(db_session, account.id, balance_cents)
        await db_session.commit()
        return account

    return _make


@pytest.fixture
def reload(db_session):
    """Re-read a row, discarding whatever the test session had cached."""
    async def _reload(model, pk):
        return await db_session.get(model, pk, populate_existing=True)
    return _reload
