"""FastAPI dependencies for the settlement engine."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.base import async_session_factory
from app.services.ledger import WagerLedger
from app.services.provider import MatchProviderClient


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()


async def get_ledger(db: AsyncSession = Depends(get_db)) -> WagerLedger:
    """Read access to the wager ledger."""
    return WagerLedger(db)


async def get_provider_client(
    redis_client: redis.Redis = Depends(get_redis),
) -> AsyncGenerator[MatchProviderClient, None]:
    """Get match provider client dependency."""
    async with MatchProviderClient(redis_client=redis_client) as client:
        yield client
