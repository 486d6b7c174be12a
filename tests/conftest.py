import hashlib
import hmac
import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portal.config.settings import Settings, get_settings, settings
from portal.infra.database import Base, get_session
from portal.v1.core.registries import JobRegistry
from portal.v1.core.state_machines import InstallStatus, PurchaseStatus

# Import models to ensure they're registered
from portal.v1.infra.jobs import models as job_models  # noqa: F401
from portal.v1.provisioning import models as provisioning_models  # noqa: F401
from portal.v1.provisioning.models import Customer, Install, Purchase
from portal.v1.webhooks import models as webhook_models  # noqa: F401
from portal.v1.webhooks.providers import register_webhook_providers

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-test-token"


class FakeClock:
    """Manually advanced clock shared by the components under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}",
        environment="development",
        razorpay_webhook_secret=WEBHOOK_SECRET,
        admin_token=ADMIN_TOKEN,
        app_base_url="https://portal.test",
        job_poll_interval_ms=10,
        job_backoff_jitter=0.0,
        job_handler_timeout_s=1.0,
        job_shutdown_grace_s=1.0,
        reaper_interval_s=0.05,
    )


@pytest.fixture
async def test_engine(test_settings):
    """Create a test database engine with all tables."""
    engine = create_async_engine(test_settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry() -> JobRegistry:
    """An isolated job registry, so tests never touch the global one."""
    return JobRegistry()


@pytest.fixture
def make_purchase(session_factory):
    """Create a customer and a pending purchase for an order id."""

    async def _make(
        order_id: str = "order_123",
        email: str = "buyer@example.com",
        amount: int = 49900,
        status: PurchaseStatus = PurchaseStatus.PENDING,
        payment_id: str | None = None,
    ) -> Purchase:
        async with session_factory() as session:
            customer = Customer(email=email.lower(), name="Test Buyer")
            session.add(customer)
            await session.flush()
            purchase = Purchase(
                customer_id=customer.id,
                provider_order_id=order_id,
                provider_payment_id=payment_id,
                status=status.value,
                amount=amount,
                currency="INR",
            )
            session.add(purchase)
            await session.commit()
            return purchase

    return _make


@pytest.fixture
def make_install(session_factory, make_purchase):
    """Create a purchase and its install in the given state."""

    async def _make(
        status: InstallStatus = InstallStatus.PENDING,
        order_id: str = "order_123",
        email: str = "buyer@example.com",
    ) -> Install:
        purchase = await make_purchase(
            order_id=order_id, email=email, status=PurchaseStatus.PAID
        )
        async with session_factory() as session:
            install = Install(
                customer_id=purchase.customer_id,
                purchase_id=purchase.id,
                status=status.value,
            )
            session.add(install)
            await session.commit()
            return install

    return _make


@pytest.fixture
def sign():
    """Razorpay-style HMAC-SHA256 hex signature over raw bytes."""

    def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def webhook_body():
    """Build a Razorpay webhook body as the exact bytes that get signed."""

    def _body(
        event_id: str = "evt_001",
        event: str = "payment.captured",
        order_id: str | None = "order_123",
        payment_id: str | None = "pay_123",
        amount: int = 49900,
    ) -> bytes:
        entity = {"id": payment_id, "amount": amount, "currency": "INR"}
        if order_id is not None:
            entity["order_id"] = order_id
        payload = {"payment": {"entity": entity}}
        if event.startswith("refund."):
            payload = {
                "refund": {
                    "entity": {"id": "rfnd_001", "payment_id": payment_id, "amount": amount}
                }
            }
        return json.dumps(
            {"event_id": event_id, "event": event, "payload": payload}
        ).encode()

    return _body


@pytest.fixture
def app(test_settings, session_factory):
    """Create a test FastAPI application bound to the test database."""
    from portal.main import create_app

    app = create_app()
    # Re-register the provider so signatures use the test secret
    register_webhook_providers(test_settings)

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield app

    app.dependency_overrides.clear()
    register_webhook_providers(settings)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
