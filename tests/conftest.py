"""Test fixtures — a throwaway SQLite database per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own SQLite file (tmp_path) with the schema created
   straight from the ORM metadata. The auth services commit, use
   SAVEPOINTs and run concurrent transactions, so a real file-backed
   database is simpler than wrapping everything in one outer rollback.
2. pysqlite's own transaction handling breaks SAVEPOINT, so the driver's
   implicit BEGIN is disabled and SQLAlchemy emits it instead.
3. Auth is NOT mocked. `client` carries a real session token for a real
   user, so every request goes through the actual AuthGate.
"""

import uuid
from dataclasses import dataclass

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reps.auth.sessions import SessionManager
from reps.auth.users import UserService
from reps.db.engine import get_db
from reps.db.models import Base
from reps.mail import get_mailer
from reps.main import app


def make_engine(path, *, immediate: bool = False):
    """File-backed aiosqlite engine with working SAVEPOINTs.

    immediate=True takes the write lock at BEGIN, which makes concurrent
    writers queue up instead of failing with "database is locked".
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=10000")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE" if immediate else "BEGIN")

    return engine


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "reps.db"


@pytest_asyncio.fixture()
async def engine(db_path):
    engine = make_engine(db_path)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def serial_session_factory(engine, db_path):
    """Sessions on their own engine for racing transactions against each other."""
    serial = make_engine(db_path, immediate=True)
    yield async_sessionmaker(serial, class_=AsyncSession, expire_on_commit=False)
    await serial.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ─── Mail ──────────────────────────────────────────────────


@dataclass
class SentMail:
    to_address: str
    subject: str
    html: str
    link: str


class CapturingMailer:
    """Mailer that keeps every message in memory."""

    def __init__(self):
        self.sent: list[SentMail] = []

    async def send(self, to_address, subject, html, *, link=""):
        self.sent.append(SentMail(to_address, subject, html, link))

    @property
    def last_token(self) -> str:
        return self.sent[-1].link.split("token=", 1)[1]


@pytest.fixture()
def mailer():
    return CapturingMailer()


# ─── Users & sessions ──────────────────────────────────────


async def _create_user(db, email=None, **flags):
    """Create and commit a user. `flags` sets is_admin / is_blocked etc."""
    email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
    user = await UserService(db).create_user(email)
    for field, value in flags.items():
        setattr(user, field, value)
    await db.commit()
    return user


async def _create_session_token(db, user, **kwargs) -> str:
    issued = await SessionManager(db).create(user.id, **kwargs)
    await db.commit()
    return issued.token


@pytest.fixture()
def make_user(db_session):
    """Factory: `await make_user("x@example.com", is_blocked=True)`."""
    async def _make(email=None, **flags):
        return await _create_user(db_session, email, **flags)
    return _make


@pytest.fixture()
def make_session_token(db_session):
    """Factory: `await make_session_token(user, user_agent="CLI")`."""
    async def _make(user, **kwargs):
        return await _create_session_token(db_session, user, **kwargs)
    return _make


@pytest_asyncio.fixture()
async def user(db_session):
    return await _create_user(db_session, "ada@example.com", display_name="Ada")


@pytest_asyncio.fixture()
async def user_token(db_session, user):
    return await _create_session_token(db_session, user, user_agent="pytest")


# ─── HTTP clients ──────────────────────────────────────────


def _override(db_session, mailer):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mailer] = lambda: mailer


@pytest_asyncio.fixture()
async def unauthenticated_client(db_session, mailer):
    """HTTP client with no credential — for the public auth routes."""
    _override(db_session, mailer)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(db_session, mailer, user_token):
    """HTTP client authenticated as `user` with a bearer session token."""
    _override(db_session, mailer)
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {user_token}"},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def admin(db_session):
    return await _create_user(db_session, "admin@example.com", is_admin=True)


@pytest_asyncio.fixture()
async def admin_client(db_session, mailer, admin):
    """HTTP client authenticated as an admin user."""
    token = await _create_session_token(db_session, admin)
    _override(db_session, mailer)
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
