from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base, get_db
from main import app
from models.enums import BillingCycle, SubscriptionStatus, UserRole
from models.subscription_plan import SubscriptionPlan
from models.user_subscription import UserSubscription
from routers import rate_limit
from services import wallet as wallet_service
from services.billing_scheduler import BillingScheduler
from services.clock import utcnow
from services.plans import seed_default_plans
from services.session_token import create_session_token
from services.users import ensure_user


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def plans(db):
    await seed_default_plans(db)
    result = await db.execute(select(SubscriptionPlan))
    return {plan.name: plan for plan in result.scalars().all()}


@pytest.fixture
def make_user(db):
    async def _make(user_id: str = "user-1", role: UserRole = UserRole.USER):
        return await ensure_user(user_id, db, role=role)

    return _make


@pytest.fixture
def fund_wallet(db):
    async def _fund(user_id: str, amount: int):
        return await wallet_service.add_funds(user_id, amount, db, description="Test funding")

    return _fund


@pytest.fixture
def make_subscription(db):
    async def _make(
        user_id: str,
        plan: SubscriptionPlan,
        *,
        period_end,
        period_start=None,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        auto_renew: bool = True,
        cancel_at_period_end: bool = False,
        requests_used: int = 0,
    ) -> UserSubscription:
        subscription = UserSubscription(
            user_id=user_id,
            plan=plan,
            billing_cycle=billing_cycle,
            status=status,
            current_period_start=period_start or (period_end - timedelta(days=30)),
            current_period_end=period_end,
            requests_used=requests_used,
            requests_limit=plan.monthly_requests,
            auto_renew=auto_renew,
            cancel_at_period_end=cancel_at_period_end,
        )
        db.add(subscription)
        await db.commit()
        return subscription

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, role: UserRole = UserRole.USER):
        token = create_session_token(user_id, role=role)["token"]
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    previous_scheduler = getattr(app.state, "billing_scheduler", None)
    app.state.billing_scheduler = BillingScheduler(session_maker)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.state.billing_scheduler = previous_scheduler
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)
