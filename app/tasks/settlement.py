"""Settlement tasks.

Recurring (fired by beat, gated by the job descriptors):
- settlement_sweep: settle pending wagers that are due
- retry_sweep: re-evaluate cancelled wagers with retry budget
- refresh_upcoming_fixtures: warm the fixture & odds cache

One-off:
- check_wager_settlement: queued with an ETA at placement

Worker signals:
- worker_ready: reconcile descriptors, then queue recovery_pass
- worker_shutting_down: move descriptors to unscheduled
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as redis
import structlog
from celery.signals import worker_ready, worker_shutting_down
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings, get_settlement_config
from app.models.base import get_task_session_factory, utcnow
from app.services.cache import CacheTier, FixtureCache, fixture_filter_key, odds_key
from app.services.markets import group_odds
from app.services.matching import AIDisambiguator
from app.services.orchestrator import JobOrchestrator
from app.services.provider import MatchProviderClient, RequestRateLimiter
from app.services.resolver import MatchResultResolver
from app.services.settlement import SettlementService
from app.tasks import celery_app

logger = structlog.get_logger(__name__)

UPCOMING_HOURS = 48


@dataclass
class SettlementRuntime:
    """Everything one task run needs, bound to the task's event loop."""

    session_factory: async_sessionmaker[AsyncSession]
    redis: redis.Redis
    provider: MatchProviderClient
    cache: FixtureCache
    settlement: SettlementService
    orchestrator: JobOrchestrator


@asynccontextmanager
async def settlement_runtime():
    settings = get_settings()
    config = get_settlement_config()
    redis_client = redis.from_url(settings.redis_url)
    try:
        async with get_task_session_factory() as session_factory:
            async with MatchProviderClient(redis_client=redis_client) as provider:
                cache = FixtureCache(redis_client, config.cache)
                disambiguator = None
                if settings.matcher_configured and config.matching.ai_enabled:
                    disambiguator = AIDisambiguator(
                        rate_limiter=RequestRateLimiter.per_minute(
                            redis_client,
                            config.matching.ai_requests_per_minute,
                            key_prefix="ratelimit:matcher",
                        ),
                    )
                resolver = MatchResultResolver(provider, cache, disambiguator, config.matching)
                yield SettlementRuntime(
                    session_factory=session_factory,
                    redis=redis_client,
                    provider=provider,
                    cache=cache,
                    settlement=SettlementService(session_factory, resolver, config),
                    orchestrator=JobOrchestrator(
                        session_factory, redis_client=redis_client, config=config
                    ),
                )
    finally:
        await redis_client.aclose()


def _run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def refresh_fixtures(
    provider: MatchProviderClient,
    cache: FixtureCache,
    now: datetime,
    hours: int = UPCOMING_HOURS,
) -> dict[str, Any]:
    """
    Cache the upcoming fixture list and each fixture's grouped odds.

    Returns statistics about what was cached.
    """
    stats = {"fixtures_cached": 0, "odds_groups": 0}
    candidates = await provider.list_events(now, now + timedelta(hours=hours))

    await cache.set(
        fixture_filter_key(scope="upcoming", date=now.strftime("%Y-%m-%d"), hours=hours),
        [c.to_cache() for c in candidates],
        CacheTier.FIXTURES,
    )
    for candidate in candidates:
        stats["fixtures_cached"] += 1
        if not candidate.offers:
            continue
        groups = group_odds(candidate.offers)
        await cache.set(odds_key(candidate.event_id), groups, CacheTier.FIXTURES)
        stats["odds_groups"] += len(groups)

    logger.info("fixture_cache_refreshed", **stats)
    return stats


# ---------------------------------------------------------------------------
# Recurring jobs
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, soft_time_limit=240, time_limit=300)
def settlement_sweep(self, job_name: str = "settlement-sweep"):
    """
    Scheduled: every minute

    Settles every pending wager past its estimated settlement time, at
    most five at a time.
    """
    return _run(_settlement_sweep_async(job_name))


async def _settlement_sweep_async(job_name: str) -> dict[str, Any]:
    async with settlement_runtime() as runtime:
        return await runtime.orchestrator.run_job(
            job_name, runtime.settlement.run_settlement_sweep
        )


@celery_app.task(bind=True, soft_time_limit=540, time_limit=600)
def retry_sweep(self, job_name: str = "retry-sweep"):
    """
    Scheduled: every 5 minutes

    Gives each cancelled wager with retry budget one more evaluation.
    """
    return _run(_retry_sweep_async(job_name))


async def _retry_sweep_async(job_name: str) -> dict[str, Any]:
    async with settlement_runtime() as runtime:
        return await runtime.orchestrator.run_job(job_name, runtime.settlement.run_retry_sweep)


@celery_app.task(bind=True, soft_time_limit=240, time_limit=300)
def refresh_upcoming_fixtures(self, job_name: str = "refresh-fixtures"):
    """
    Scheduled: every 6 hours

    Warms the fixture cache so candidate lookups and odds displays hit Redis.
    """
    return _run(_refresh_upcoming_fixtures_async(job_name))


async def _refresh_upcoming_fixtures_async(job_name: str) -> dict[str, Any]:
    async with settlement_runtime() as runtime:
        return await runtime.orchestrator.run_job(
            job_name, lambda: refresh_fixtures(runtime.provider, runtime.cache, utcnow())
        )


# ---------------------------------------------------------------------------
# One-off checks
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, max_retries=3, soft_time_limit=120, time_limit=150)
def check_wager_settlement(self, wager_id: int):
    """Settlement check for one wager at its estimated end time."""
    return _run(_check_wager_settlement_async(self, wager_id))


async def _check_wager_settlement_async(task, wager_id: int) -> str:
    try:
        async with settlement_runtime() as runtime:
            outcome = await runtime.settlement.settle_wager(wager_id)
    except Exception as e:
        logger.error(
            "wager_check_failed",
            wager_id=wager_id,
            error=str(e),
            task_id=task.request.id,
        )
        # Retry on transient errors; the sweep is the backstop
        if task.request.retries < task.max_retries:
            raise task.retry(exc=e, countdown=60 * (task.request.retries + 1))
        raise

    logger.info("wager_check_complete", wager_id=wager_id, outcome=outcome.value)
    return outcome.value


# ---------------------------------------------------------------------------
# Worker lifecycle
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, soft_time_limit=240, time_limit=300)
def recovery_pass(self, job_name: str = "settlement-sweep"):
    """
    Queued once per worker start.

    Runs under the settlement sweep's descriptor, so it never overlaps a
    beat-fired sweep.
    """
    return _run(_recovery_pass_async(job_name))


async def _recovery_pass_async(job_name: str) -> dict[str, Any]:
    async with settlement_runtime() as runtime:
        return await runtime.orchestrator.run_job(
            job_name, runtime.settlement.run_recovery_pass
        )


async def _startup_async() -> dict[str, Any]:
    async with settlement_runtime() as runtime:
        return await runtime.orchestrator.reconcile_on_startup()


async def _shutdown_async() -> list[str]:
    async with get_task_session_factory() as session_factory:
        return await JobOrchestrator(session_factory).shutdown()


@worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    try:
        _run(_startup_async())
    except Exception as e:
        logger.error("worker_startup_reconcile_failed", error=str(e))
        return
    recovery_pass.delay()


@worker_shutting_down.connect
def on_worker_shutting_down(sender=None, **kwargs):
    try:
        _run(_shutdown_async())
    except Exception as e:
        logger.error("worker_shutdown_unschedule_failed", error=str(e))
