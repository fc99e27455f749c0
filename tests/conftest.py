"""Shared test fixtures — file-backed SQLite per test and wired-up services."""

import os
import tempfile

# Force test config BEFORE any app imports
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "test-secret-key-for-incidentdesk"
os.environ["LOG_DIR"] = os.path.join(tempfile.gettempdir(), "incidentdesk-test-logs")
os.environ["SEED_DEFAULT_CATEGORIES"] = "false"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from incidentdesk.auth.rbac import Role
from incidentdesk.auth.session import SessionContext
from incidentdesk.engine.analytics import AnalyticsService
from incidentdesk.engine.assignment import AssignmentResolver
from incidentdesk.engine.categories import CategoryCatalog
from incidentdesk.engine.incident_store import IncidentStore
from incidentdesk.engine.lifecycle import LifecycleEngine
from incidentdesk.engine.messages import MessageThreads
from incidentdesk.engine.user_directory import UserDirectory
from incidentdesk.live.gateway import LiveQueryGateway
from incidentdesk.live.views import LiveViews
from incidentdesk.models.base import Base
from incidentdesk.notifications.dispatcher import NotificationDispatcher


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture
async def db_engine(db_url):
    engine = create_async_engine(db_url, connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def gateway():
    gw = LiveQueryGateway(queue_size=100, fetch_timeout=5.0)
    yield gw
    await gw.close()


@pytest.fixture
def users(db_factory, gateway):
    return UserDirectory(db_factory, live=gateway)


@pytest.fixture
def store(db_factory, gateway):
    return IncidentStore(db_factory, live=gateway, operation_timeout=5.0, max_cas_retries=5)


@pytest.fixture
def dispatcher(db_factory, users, gateway):
    return NotificationDispatcher(db_factory, users=users, live=gateway)


@pytest.fixture
def messages(db_factory, store, gateway):
    return MessageThreads(db_factory, store, live=gateway)


@pytest.fixture
def lifecycle(store, users, dispatcher, messages):
    return LifecycleEngine(store, users, dispatcher=dispatcher, messages=messages)


@pytest.fixture
def resolver(store, users, dispatcher, messages):
    return AssignmentResolver(store, users, dispatcher=dispatcher, messages=messages)


@pytest.fixture
def categories(db_factory, gateway):
    return CategoryCatalog(db_factory, live=gateway)


@pytest.fixture
def analytics(store, categories):
    return AnalyticsService(store, categories=categories)


@pytest.fixture
def views(gateway, store, users, dispatcher, messages, categories):
    return LiveViews(
        gateway, store, users=users, dispatcher=dispatcher, messages=messages, categories=categories
    )


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------

async def _register(users, user_id, full_name, role, **extra):
    profile = await users.register({
        "id": user_id,
        "full_name": full_name,
        "email": f"{user_id.lower()}@example.com",
        "role": role.value,
        **extra,
    })
    return profile, SessionContext.from_user(profile)


@pytest_asyncio.fixture
async def reporter(users):
    return await _register(users, "U1", "Uma Reporter", Role.REPORTER)


@pytest_asyncio.fixture
async def reviewer(users):
    return await _register(users, "V1", "Val Reviewer", Role.REVIEWER)


@pytest_asyncio.fixture
async def responder(users):
    return await _register(
        users, "R1", "Rob Responder", Role.RESPONDER,
        skills=["Plumbing", "Electrical"], latitude=51.5007, longitude=-0.1246,
    )


@pytest_asyncio.fixture
async def admin(users):
    return await _register(users, "A1", "Ada Admin", Role.ADMIN)


@pytest.fixture
def register_user(users):
    """Register an extra profile: ``await register_user("R2", "Name", Role.RESPONDER)``."""
    async def _make(user_id, full_name, role, **extra):
        return await _register(users, user_id, full_name, role, **extra)

    return _make


@pytest.fixture
def leak_report():
    return {
        "title": "Leak",
        "description": "Water dripping from the ceiling in room 4",
        "category": "Maintenance",
        "location": "Building A, Room 4",
        "latitude": 51.5014,
        "longitude": -0.1419,
    }
