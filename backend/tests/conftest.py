"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database and a Stripe gateway mock,
so no Postgres instance or Stripe key is needed.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")

from collections.abc import AsyncGenerator  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.models  # noqa: E402,F401
from app.billing.dependencies import get_gateway, get_settings  # noqa: E402
from app.billing.stripe_client import StripeGateway  # noqa: E402
from app.config import Settings  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.subscription import Subscription  # noqa: E402
from app.services.record_store import RecordStore  # noqa: E402

# ---------------------------------------------------------------------------
# Database: one in-memory SQLite database per test
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def store(db_session: AsyncSession) -> RecordStore:
    return RecordStore(db_session)


# ---------------------------------------------------------------------------
# Stripe: configuration and gateway mock
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test_dummy",
    )


@pytest.fixture
def gateway(test_settings: Settings) -> MagicMock:
    """StripeGateway mock; async methods are AsyncMocks via the spec."""
    mock = MagicMock(spec=StripeGateway)
    mock.config = test_settings
    return mock


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession, gateway: MagicMock, test_settings: Settings
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB session and gateway mock."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience: subscription records
# ---------------------------------------------------------------------------


async def _create_record(db_session: AsyncSession, account_id: str = "acct_1", **fields) -> Subscription:
    record = Subscription(account_id=account_id, **fields)
    db_session.add(record)
    await db_session.flush()
    return record


@pytest.fixture
def create_record(db_session: AsyncSession):
    """Factory fixture: ``await create_record("acct_1", status="active", ...)``."""

    async def _factory(account_id: str = "acct_1", **fields) -> Subscription:
        return await _create_record(db_session, account_id, **fields)

    return _factory


@pytest_asyncio.fixture
async def active_record(create_record) -> Subscription:
    return await create_record(
        "acct_1",
        status="active",
        plan_id="price_P1",
        subscription_id="sub_S1",
        customer_id="cus_C1",
    )
