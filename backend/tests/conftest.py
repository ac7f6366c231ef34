"""Shared test configuration and fixtures.

Uses a transactional rollback strategy per test for full isolation:
- Tables are created on a fresh engine for each test and dropped afterwards.
- Each test runs inside one outer transaction that rolls back after the test.
- ``TEST_DATABASE_URL`` selects the database; the default is an in-memory
  SQLite database, so the suite runs without a server.
"""

import hashlib
import hmac
import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from decimal import Decimal

# Gateway secrets must be in place before app.config is imported.
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.auth.jwt import create_access_token  # noqa: E402
from app.billing.plans import seed_default_plans  # noqa: E402
from app.billing.states import PaymentStatus, PaymentType, SubscriptionStatus, UserRole  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import Base, get_db, utcnow  # noqa: E402
from app.main import app  # noqa: E402
from app.models.payment import Payment  # noqa: E402
from app.models.pricing_plan import PricingPlan  # noqa: E402
from app.models.subscription import Subscription  # noqa: E402
from app.models.user import User  # noqa: E402

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


def _make_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory DB
        return create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(TEST_DATABASE_URL, pool_pre_ping=True)


# ---------------------------------------------------------------------------
# Per-test: schema and transactional rollback for isolation
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """Create an engine with all tables; drop them when the test finishes."""
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session wrapped in a transaction that always rolls back."""
    async with test_engine.connect() as connection:
        transaction = await connection.begin()
        session = AsyncSession(bind=connection, expire_on_commit=False)

        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: users and tokens
# ---------------------------------------------------------------------------


async def _create_user(db_session: AsyncSession, prefix: str, role: str, is_active: bool = True) -> User:
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"{prefix}-{unique}@test.com",
        name=f"{prefix.title()} User",
        is_active=is_active,
        role=role,
    )
    db_session.add(user)
    await db_session.flush()
    return user


def _bearer(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


@pytest.fixture
def headers_for():
    """Return a function building Authorization headers for any user."""
    return _bearer


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and return a regular test user directly in the DB."""
    return await _create_user(db_session, "listener", UserRole.USER.value)


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "other", UserRole.USER.value)


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "admin", UserRole.ADMIN.value)


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return _bearer(test_user)


@pytest_asyncio.fixture
async def admin_headers(admin_user: User) -> dict[str, str]:
    return _bearer(admin_user)


# ---------------------------------------------------------------------------
# Convenience fixtures: plans, subscriptions, signatures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession) -> dict[str, PricingPlan]:
    """The default catalog keyed by slug."""
    await seed_default_plans(db_session)
    rows = await db_session.execute(select(PricingPlan))
    return {plan.slug: plan for plan in rows.scalars().all()}


@pytest_asyncio.fixture
async def make_subscription(db_session: AsyncSession):
    """Factory for a subscription plus the completed payment that opened it."""

    async def _make(
        user: User,
        plan: PricingPlan,
        *,
        status: str = SubscriptionStatus.ACTIVE.value,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
        pending_plan_id: uuid.UUID | None = None,
        paid_at: datetime | None = None,
        gateway_subscription_id: str | None = None,
    ) -> Subscription:
        now = utcnow()
        start = period_start or now - timedelta(days=1)
        subscription = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            amount=plan.price,
            currency=plan.currency,
            current_period_start=start,
            current_period_end=period_end or start + timedelta(days=30),
            cancel_at_period_end=cancel_at_period_end,
            pending_plan_id=pending_plan_id,
            gateway_subscription_id=gateway_subscription_id,
        )
        db_session.add(subscription)
        await db_session.flush()

        db_session.add(
            Payment(
                user_id=user.id,
                type=PaymentType.SUBSCRIPTION.value,
                amount=plan.price if plan.price > 0 else Decimal("199.00"),
                currency=plan.currency,
                status=PaymentStatus.COMPLETED.value,
                gateway_order_id=f"order_{uuid.uuid4().hex[:14]}",
                gateway_payment_id=f"pay_{uuid.uuid4().hex[:14]}",
                ref_type="subscription",
                ref_id=subscription.id,
                plan_id=plan.id,
                completed_at=paid_at or start,
            )
        )
        await db_session.flush()
        return subscription

    return _make


def sign_checkout(order_id: str, payment_id: str) -> str:
    """Signature the gateway's checkout returns for ``order_id|payment_id``."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(settings.razorpay_key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_webhook(body: bytes) -> str:
    return hmac.new(settings.razorpay_webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def checkout_signer():
    return sign_checkout


@pytest.fixture
def webhook_signer():
    return sign_webhook
