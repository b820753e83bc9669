import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.coupon import Coupon
from models.user import User
from routers import rate_limit
from services import payments
from services.ledger import AccountLedger


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def queued_reconciliations(monkeypatch):
    """Record reconciliation retries instead of talking to Redis."""
    queued = []
    monkeypatch.setattr(payments, "enqueue_reconciliation_retry", queued.append)
    return queued


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


async def create_account(db, *, user_id=None, **overrides):
    """Open a Free account and optionally overwrite its balance columns."""
    user_id = user_id or f"user-{uuid.uuid4().hex[:8]}"
    db.add(User(id=user_id, email=f"{user_id}@example.test"))
    await db.commit()
    account = await AccountLedger(db).open_account(user_id)
    if overrides:
        for name, value in overrides.items():
            setattr(account, name, value)
        await db.commit()
    return account


async def create_coupon(db, code, *, discount_type="percentage", discount_value=100, max_uses=None,
                        applicable_purpose="both", expires_at=None, active=True):
    coupon = Coupon(
        id=str(uuid.uuid4()),
        code=code.upper(),
        discount_type=discount_type,
        discount_value=discount_value,
        max_uses=max_uses,
        used_count=0,
        applicable_purpose=applicable_purpose,
        expires_at=expires_at,
        active=active,
        created_at=datetime.now(timezone.utc),
    )
    db.add(coupon)
    await db.commit()
    return coupon


def days_ago(days):
    return datetime.now(timezone.utc) - timedelta(days=days)
