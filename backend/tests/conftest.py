"""Shared pytest fixtures for the banking workflow engine test suite.

Provides:
- In-memory async SQLite database (no PostgreSQL needed for tests)
- AsyncSession factory
- Scripted fakes for the ledger and the service gateway
- Workflow builders for the common step layouts
- FastAPI test client (httpx.AsyncClient) wired to the fakes
"""

import os
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("RETRY_SCHEDULER_ENABLED", "false")

from db.base import Base  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402
from tests.factories import form_step, transfer_step  # noqa: E402
from tests.fakes import FakeLedger, FakeServiceAdapter  # noqa: E402


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test; one shared connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.commit()


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def service_adapter() -> FakeServiceAdapter:
    return FakeServiceAdapter()


# ---------------------------------------------------------------------------
# Workflow builders
# ---------------------------------------------------------------------------

@pytest.fixture
def make_workflow(db_session) -> Callable:
    """Create a workflow from step dicts, published unless ``publish=False``."""

    async def _make(steps: list[dict], name: str = "Test workflow", publish: bool = True, **kwargs):
        svc = WorkflowService(db_session)
        workflow = await svc.create_workflow(name=name, steps=steps, **kwargs)
        if publish:
            workflow = await svc.publish(workflow.id)
        await db_session.commit()
        return workflow

    return _make


@pytest_asyncio.fixture
async def transfer_workflow(make_workflow):
    """FORM (amount, toAccount) then POST_TRANSACTION."""
    return await make_workflow(
        [
            form_step(
                0,
                data_key="transferForm",
                validation=[
                    {"id": "amount", "type": "number", "required": True, "validation": {"min": 1}},
                    {"id": "toAccount", "type": "text", "required": True},
                ],
            ),
            transfer_step(1),
        ],
        name="Send money",
    )


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db_engine, session_factory, ledger, service_adapter):
    """FastAPI app wired to the test database and the fakes."""
    from app.dependencies import get_db, get_ledger_adapter, get_service_adapter
    from app.main import create_app

    test_app = create_app()

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = _get_db
    test_app.dependency_overrides[get_ledger_adapter] = lambda: ledger
    test_app.dependency_overrides[get_service_adapter] = lambda: service_adapter
    yield test_app
    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
