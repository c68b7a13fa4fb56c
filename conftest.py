import os
import sys
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Tuple

import pytest
import pytest_asyncio
from sqlmodel import SQLModel, create_engine

REPO_ROOT = Path(__file__).parent
_TMP = Path(tempfile.mkdtemp(prefix="civicfix-tests-"))
TEST_DB_PATH = _TMP / "test.db"

# Set environment variables BEFORE importing app modules to bypass strict checks
os.environ["JWT_SECRET"] = "test-secret-key-for-pytest-only-12345"
# File-backed SQLite so the TestClient loop and pytest-asyncio loops share one database
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["STORAGE_PROVIDER"] = "local"
os.environ["LOCAL_STORAGE_DIR"] = str(_TMP / "storage")
os.environ["APP_ENV"] = "test"
os.environ.pop("SENTRY_DSN", None)
os.environ.pop("WORKFLOW_STRICT_TRANSITIONS", None)

# Add the backend directory to sys.path so imports work
BACKEND_PATH = REPO_ROOT / "fastapi-backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

import civicfix.models  # noqa: E402,F401  registers tables
import civicfix.auth as auth  # noqa: E402
from civicfix.database import async_session_factory  # noqa: E402
from civicfix.identity import Principal  # noqa: E402
from civicfix.models import Role  # noqa: E402
from civicfix.repository import ReportRepository  # noqa: E402
from civicfix.workflow import WorkflowEngine  # noqa: E402

# Sync engine used only for DDL between tests.
_sync_engine = create_engine(f"sqlite:///{TEST_DB_PATH}")


@pytest.fixture(autouse=True)
def reset_database():
    """Every test starts from empty tables and an empty role cache."""
    SQLModel.metadata.drop_all(_sync_engine)
    SQLModel.metadata.create_all(_sync_engine)
    auth.role_resolver.clear()
    yield
    auth.role_resolver.clear()


@pytest.fixture(name="client")
def client_fixture():
    from fastapi.testclient import TestClient
    from civicfix.main import app

    with TestClient(app) as client:
        yield client


@pytest_asyncio.fixture
async def session():
    async with async_session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def repository(session) -> ReportRepository:
    return ReportRepository(session)


@pytest_asyncio.fixture
async def engine(repository) -> WorkflowEngine:
    return WorkflowEngine(repository, strict=False)


@pytest_asyncio.fixture
async def make_principal() -> Callable[..., Awaitable[Principal]]:
    """Return a factory that stores a profile and returns its Principal."""

    async def _create(email: str, role: Role = Role.REPORTER) -> Principal:
        async with async_session_factory() as s:
            profile = await auth.create_profile(s, email=email, password="testpass123", role=role)
        return Principal(id=profile.id, role=role, email=profile.email)

    return _create


@pytest.fixture
def register_and_login(client) -> Callable[..., Tuple[str, str]]:
    """Return a helper that registers a profile through the API and logs it in."""

    def _register(email: str, role: str = None, token: str = None) -> Tuple[str, str]:
        body = {"email": email, "password": "testpass123", "full_name": email.split("@")[0]}
        if role:
            body["role"] = role
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        resp = client.post("/auth/register", json=body, headers=headers)
        assert resp.status_code == 201, f"Register failed: {resp.status_code} {resp.text}"
        profile_id = resp.json()["id"]

        login = client.post("/auth/login", data={"username": email, "password": "testpass123"})
        assert login.status_code == 200, f"Login failed: {login.status_code} {login.text}"
        return profile_id, login.json()["access_token"]

    return _register


@pytest.fixture
def failing_updates(monkeypatch) -> Callable[[], None]:
    """Return a switch that makes every UPDATE fail as if the database dropped it."""
    from sqlalchemy import Update
    from sqlalchemy.exc import OperationalError
    from sqlmodel.ext.asyncio.session import AsyncSession

    original_exec = AsyncSession.exec

    async def _exec(self, statement, *args, **kwargs):
        if isinstance(statement, Update):
            raise OperationalError(str(statement), {}, Exception("database is locked"))
        return await original_exec(self, statement, *args, **kwargs)

    def _enable() -> None:
        monkeypatch.setattr(AsyncSession, "exec", _exec)

    return _enable
