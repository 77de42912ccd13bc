"""Pytest configuration and fixtures for settlement engine tests."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config.settlement import SettlementConfig
from app.models import Account, Base
from app.models.base import utcnow
from app.services.placement import SelectionRequest


class FakeRedis:
    """In-memory stand-in for the redis.asyncio calls the engine makes."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, int] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def mget(self, keys):
        return [self.store.get(k) for k in keys]

    async def ping(self):
        return True


class BrokenRedis:
    """Redis client whose every call fails."""

    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ex=None, nx=False):
        raise ConnectionError("redis down")

    async def mget(self, keys):
        raise ConnectionError("redis down")

    async def ping(self):
        raise ConnectionError("redis down")


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def now():
    """Current time. Rows get their created_at from the real clock too."""
    return utcnow()


@pytest.fixture
def settlement_config():
    """Default tunables with the waits taken out."""
    config = SettlementConfig()
    config.sweeps.retry_spacing_seconds = 0
    config.sweeps.settlement_concurrency = 1
    return config


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory on a throwaway SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_account(session_factory):
    """Create an account with the given opening balance, return its id."""

    async def _make(balance="100.00", ref="acct-1") -> int:
        async with session_factory() as session:
            account = Account(external_ref=ref, currency="EUR", balance=Decimal(balance))
            session.add(account)
            await session.commit()
            return account.id

    return _make


def selection_request(
    event_id="ev-1",
    market_name="Match Result",
    selection_label="1",
    odds="2.00",
    home="Arsenal",
    away="Chelsea",
    start=None,
    selection_id=None,
):
    """Selection kicking off three hours ago unless ``start`` says otherwise."""
    return SelectionRequest(
        event_id=event_id,
        market_name=market_name,
        selection_id=selection_id or f"{event_id}-{selection_label}",
        selection_label=selection_label,
        odds=Decimal(odds),
        home_name=home,
        away_name=away,
        event_start_time=start or utcnow() - timedelta(hours=3),
    )
