"""
Shared fixtures for the auth core tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from orgadmin.auth.audit import AuditTrail
from orgadmin.auth.database import AccountDatabase
from orgadmin.auth.jwt_handler import JWTHandler
from orgadmin.auth.models import Principal
from orgadmin.auth.permissions import seed_roles
from orgadmin.auth.user_manager import AuthManager
from orgadmin.config import Settings
from orgadmin.server import create_app


ACCESS_SECRET = "test-access-secret-0123456789abcdef"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSink:
    """Audit sink that keeps events in memory."""

    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)

    def actions(self):
        return [e.action for e in self.events]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path):
    database = AccountDatabase(tmp_path / "auth.db")
    seed_roles(database)
    return database


@pytest.fixture
def jwt_handler():
    return JWTHandler(ACCESS_SECRET, REFRESH_SECRET)


@pytest.fixture
def audit_sink():
    return RecordingSink()


@pytest.fixture
def manager(db, jwt_handler, clock, audit_sink):
    return AuthManager(
        db,
        jwt_handler,
        bcrypt_rounds=4,
        clock=clock,
        audit_trail=AuditTrail(audit_sink),
    )


@pytest.fixture
def create_user(db, manager):
    """Factory: principal plus login credentials."""

    def _create(
        user_id="u-alice",
        username="alice",
        password="Secret123",
        role_code="ROLE_USER",
        organization_id="org-1",
        **principal_fields,
    ):
        db.create_principal(Principal(
            user_id=user_id,
            name=username.title(),
            organization_id=organization_id,
            email=f"{username}@example.com",
            role_code=role_code,
            **principal_fields,
        ))
        return manager.register_credentials(user_id, username, password)

    return _create


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=tmp_path / "auth.db",
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        bcrypt_rounds=4,
        cookie_secure=False,
        cors_origins=("http://console.local",),
    )


@pytest_asyncio.fixture
async def client(settings, manager):
    app = create_app(settings, manager=manager)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client
