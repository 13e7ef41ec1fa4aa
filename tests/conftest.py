# Shared pytest configuration and fixtures
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.plans import PlanTable
from app.core.settings import Settings, settings
from app.db import models
from app.db.models import Base
from app.services.billing.service import BillingService
from app.services.payments.service import MockProvider
from app.services.subscriptions.service import SubscriptionStateMachine
from app.services.usage.service import UsageMeter
from app.services.webhooks.ingester import WebhookIngester
from factories import PRICE_AMOUNTS, PRICE_BASIC, PRICE_ENTERPRISE, PRICE_PRO, WEBHOOK_SECRET


@pytest.fixture
def plans() -> PlanTable:
    return PlanTable.from_settings(
        Settings(
            _env_file=None,
            stripe_price_id_basic=PRICE_BASIC,
            stripe_price_id_pro=PRICE_PRO,
            stripe_price_id_enterprise=PRICE_ENTERPRISE,
            free_usage_limit=100,
            basic_usage_limit=500,
            pro_usage_limit=2000,
            enterprise_usage_limit=-1,
        )
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def state_machine(plans) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(plans)


@pytest.fixture
def meter(plans) -> UsageMeter:
    return UsageMeter(plans)


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider(price_amounts=PRICE_AMOUNTS)


@pytest.fixture
def ingester(session_factory, state_machine) -> WebhookIngester:
    return WebhookIngester(session_factory, state_machine, WEBHOOK_SECRET, deadline=10.0)


@pytest.fixture
def billing(session_factory, state_machine, meter, provider, plans) -> BillingService:
    return BillingService(session_factory, state_machine, meter, provider, plans, provider_timeout=2.0)


@pytest_asyncio.fixture
async def make_user(session_factory):
    async def _make(**fields) -> models.User:
        fields.setdefault("email", f"{uuid.uuid4().hex[:8]}@example.com")
        async with session_factory() as session:
            user = models.User(**fields)
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest_asyncio.fixture
async def user(make_user) -> models.User:
    return await make_user(stripe_customer_id="cus_test_1")


@pytest.fixture
def api_app(session_factory, provider, plans, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr("app.main.plan_table", plans)
    from app.main import create_app

    return create_app(session_factory=session_factory, provider=provider)


@pytest_asyncio.fixture
async def client(api_app):
    async with AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test") as ac:
        yield ac
