"""Health and readiness endpoints.

``/ready`` answers whether this instance can keep wagers settling: the
database and Redis must be reachable. Scheduling and backlog problems are
reported as warnings, since the sweeps catch up once they are fixed.
"""

import time
from datetime import datetime, timedelta, timezone

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_db, get_provider_client, get_redis
from app.config import Settings, get_settings, get_settlement_config
from app.models.base import as_utc
from app.models.domain import JobDescriptor, JobState, Wager, WagerStatus
from app.services.matching import get_disambiguator_breaker
from app.services.provider import MatchProviderClient

router = APIRouter(tags=["health"])

SWEEP_JOB = "settlement-sweep"
# Pending wagers this far past their check time mean the sweep is behind
OVERDUE_AFTER = timedelta(minutes=30)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


class ReadyCheck(BaseModel):
    status: str
    message: str | None = None


class ReadyResponse(BaseModel):
    ready: bool
    checks: dict[str, ReadyCheck]


def _ok(message: str | None = None) -> ReadyCheck:
    return ReadyCheck(status="ok", message=message)


def _warn(message: str) -> ReadyCheck:
    return ReadyCheck(status="warning", message=message)


async def _sweep_check(db: AsyncSession, now: datetime) -> ReadyCheck:
    descriptor = await db.get(JobDescriptor, SWEEP_JOB)
    if descriptor is None or descriptor.state == JobState.UNSCHEDULED.value:
        return _warn("settlement sweep is not scheduled")

    stale_after = timedelta(seconds=get_settlement_config().sweeps.stale_running_after_seconds)
    started = as_utc(descriptor.last_started_at)
    if descriptor.state == JobState.RUNNING.value and started and now - started > stale_after:
        return _warn(f"settlement sweep running since {started.isoformat()}")
    return _ok(descriptor.state)


async def _backlog_check(db: AsyncSession, now: datetime) -> ReadyCheck:
    overdue = await db.scalar(
        select(func.count(Wager.id)).where(
            Wager.status == WagerStatus.PENDING.value,
            Wager.estimated_settlement_time <= now - OVERDUE_AFTER,
        )
    )
    if overdue:
        return _warn(f"{overdue} pending wager(s) overdue")
    return _ok()


def _matcher_check(settings: Settings) -> ReadyCheck:
    # Optional: without it ambiguous fixtures stay pending
    if not settings.matcher_configured:
        return _warn("AI disambiguation disabled")
    state = get_disambiguator_breaker().current_state
    if state != "closed":
        return _warn(f"circuit {state}")
    return _ok()


@router.get("/health", response_model=HealthResponse)
async def health():
    """Liveness only."""
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))


@router.get("/ready", response_model=ReadyResponse)
async def ready(
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Readiness of the settlement pipeline.

    Fails on an unreachable database or Redis. Warns on a missing or stuck
    settlement sweep, an overdue backlog, missing provider credentials and
    an unavailable disambiguator.
    """
    now = datetime.now(timezone.utc)
    settings = get_settings()
    checks: dict[str, ReadyCheck] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["db"] = _ok()
    except Exception as e:
        checks["db"] = ReadyCheck(status="error", message=str(e))

    try:
        await redis_client.ping()
        checks["redis"] = _ok()
    except Exception as e:
        checks["redis"] = ReadyCheck(status="error", message=str(e))

    if checks["db"].status == "ok":
        checks["settlement_sweep"] = await _sweep_check(db, now)
        checks["backlog"] = await _backlog_check(db, now)

    checks["provider"] = (
        _ok("credentials configured")
        if settings.provider_configured
        else _warn("credentials not configured")
    )
    checks["matcher"] = _matcher_check(settings)

    all_ready = all(check.status != "error" for check in checks.values())
    return ReadyResponse(ready=all_ready, checks=checks)


@router.get("/health/provider")
async def provider_health(
    provider: MatchProviderClient = Depends(get_provider_client),
):
    """Round trip to the match provider, with its latency."""
    started = time.perf_counter()
    try:
        is_healthy = await provider.health_check()
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
            "timestamp": datetime.now(timezone.utc),
        }
    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "latency_ms": round((time.perf_counter() - started) * 1000, 1),
        "timestamp": datetime.now(timezone.utc),
    }
