"""Scheduled job orchestrator.

Celery beat fires the named recurring triggers; the persisted
``JobDescriptor`` rows decide whether a fired trigger actually runs.
Descriptor states:

    unscheduled → scheduled → running → scheduled
                                 ↘ cancelling → unscheduled (shutdown)

A worker that starts reconciles against the rows before doing anything:
rows left ``running`` by a dead worker are reset, and every known job is
registered idempotently. Registration never double-schedules, even when two
workers start at the same time.

One-off settlement checks go on the Celery queue with an ETA, deduplicated
through a Redis NX marker per (wager, eta).
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as redis
import structlog
from celery.schedules import crontab
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settlement_config
from app.config.settlement import SettlementConfig
from app.models.base import as_utc, utcnow
from app.models.domain import JobDescriptor, JobRun, JobState

logger = structlog.get_logger(__name__)

INTERVAL = "interval"
CRONTAB = "crontab"


@dataclass(frozen=True)
class RecurringJob:
    """A named recurring trigger and the task it runs."""

    name: str
    task: str
    trigger_kind: str
    trigger_expr: str
    concurrency_limit: int = 1

    def celery_schedule(self):
        """Schedule object for Celery beat."""
        if self.trigger_kind == INTERVAL:
            return float(self.trigger_expr)
        minute, hour, day_of_month, month_of_year, day_of_week = self.trigger_expr.split()
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )

    def next_run_after(self, when: datetime) -> datetime:
        if self.trigger_kind == INTERVAL:
            return when + timedelta(seconds=float(self.trigger_expr))
        return when + self.celery_schedule().remaining_estimate(when)


def recurring_jobs(config: SettlementConfig | None = None) -> list[RecurringJob]:
    """Every recurring job the engine runs."""
    sweeps = (config or get_settlement_config()).sweeps
    return [
        RecurringJob(
            name="settlement-sweep",
            task="app.tasks.settlement.settlement_sweep",
            trigger_kind=INTERVAL,
            trigger_expr=str(sweeps.settlement_interval_seconds),
            concurrency_limit=sweeps.settlement_concurrency,
        ),
        RecurringJob(
            name="retry-sweep",
            task="app.tasks.settlement.retry_sweep",
            trigger_kind=INTERVAL,
            trigger_expr=str(sweeps.retry_interval_seconds),
        ),
        RecurringJob(
            name="refresh-fixtures",
            task="app.tasks.settlement.refresh_upcoming_fixtures",
            trigger_kind=INTERVAL,
            trigger_expr=str(sweeps.fixture_refresh_interval_seconds),
        ),
    ]


def _enqueue_check(wager_id: int, eta: datetime) -> None:
    from app.tasks.settlement import check_wager_settlement

    check_wager_settlement.apply_async(args=[wager_id], eta=eta)


class JobOrchestrator:
    """Owns the job descriptors and the one-off check queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: list[RecurringJob] | None = None,
        redis_client: redis.Redis | None = None,
        enqueue: Callable[[int, datetime], Any] | None = None,
        config: SettlementConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or get_settlement_config()
        self.session_factory = session_factory
        self.jobs = {job.name: job for job in (jobs or recurring_jobs(self.config))}
        self.redis = redis_client
        self.enqueue = enqueue or _enqueue_check
        self.clock = clock

    # ------------------------------------------------------------------
    # Descriptor lifecycle
    # ------------------------------------------------------------------

    async def register_recurring(self, job: RecurringJob) -> bool:
        """
        Make sure ``job`` is scheduled exactly once.

        Returns True when this call scheduled it, False when it already was.
        """
        now = self.clock()
        async with self.session_factory() as session:
            row = await session.get(JobDescriptor, job.name, with_for_update=True)
            if row is not None:
                if JobState(row.state) in (JobState.SCHEDULED, JobState.RUNNING):
                    return False
                row.task = job.task
                row.trigger_kind = job.trigger_kind
                row.trigger_expr = job.trigger_expr
                row.concurrency_limit = job.concurrency_limit
                row.state = JobState.SCHEDULED.value
                row.last_scheduled_at = now
                row.next_run_at = now
                row.updated_at = now
                await session.commit()
                logger.info("job_rescheduled", job=job.name)
                return True

            session.add(
                JobDescriptor(
                    name=job.name,
                    task=job.task,
                    trigger_kind=job.trigger_kind,
                    trigger_expr=job.trigger_expr,
                    concurrency_limit=job.concurrency_limit,
                    state=JobState.SCHEDULED.value,
                    last_scheduled_at=now,
                    next_run_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Another worker registered it first
                await session.rollback()
                logger.info("job_already_registered", job=job.name)
                return False

        logger.info("job_registered", job=job.name, trigger=f"{job.trigger_kind}:{job.trigger_expr}")
        return True

    async def reconcile_on_startup(self) -> dict[str, Any]:
        """Reset descriptors left running by a dead worker, then register all jobs."""
        now = self.clock()
        stale_before = now - timedelta(seconds=self.config.sweeps.stale_running_after_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(JobDescriptor).where(JobDescriptor.state == JobState.RUNNING.value)
            )
            reset = []
            for row in result.scalars():
                started = as_utc(row.last_started_at)
                if started is None or started < stale_before:
                    row.state = JobState.SCHEDULED.value
                    row.updated_at = now
                    reset.append(row.name)
            await session.commit()

        if reset:
            logger.warning("stale_jobs_reset", jobs=reset)

        registered = [job.name for job in self.jobs.values() if await self.register_recurring(job)]
        logger.info("jobs_reconciled", registered=registered, reset=reset, known=list(self.jobs))
        return {"registered": registered, "reset": reset}

    async def begin_run(self, name: str) -> bool:
        """Claim a job for one run. False when it must not run now."""
        now = self.clock()
        async with self.session_factory() as session:
            row = await session.get(JobDescriptor, name, with_for_update=True)
            if row is None:
                logger.warning("job_not_registered", job=name)
                return False

            state = JobState(row.state)
            if state in (JobState.UNSCHEDULED, JobState.CANCELLING):
                logger.info("job_not_scheduled", job=name, state=state.value)
                return False
            if state == JobState.RUNNING:
                started = as_utc(row.last_started_at)
                stale_after = timedelta(seconds=self.config.sweeps.stale_running_after_seconds)
                if started is not None and now - started < stale_after:
                    logger.info("job_already_running", job=name, started_at=started.isoformat())
                    return False
                logger.warning("job_run_stale_taken_over", job=name)

            row.state = JobState.RUNNING.value
            row.last_started_at = now
            row.updated_at = now
            await session.commit()
        return True

    async def finish_run(self, name: str) -> None:
        now = self.clock()
        async with self.session_factory() as session:
            row = await session.get(JobDescriptor, name, with_for_update=True)
            if row is None:
                return
            row.last_completed_at = now
            row.updated_at = now
            if JobState(row.state) == JobState.CANCELLING:
                row.state = JobState.UNSCHEDULED.value
            elif JobState(row.state) == JobState.RUNNING:
                row.state = JobState.SCHEDULED.value
                job = self.jobs.get(name)
                if job is not None:
                    row.next_run_at = job.next_run_after(now)
            await session.commit()

    async def shutdown(self) -> list[str]:
        """
        Graceful stop: scheduled jobs go to unscheduled via cancelling.

        A job still running stays ``cancelling`` until its ``finish_run``.
        """
        now = self.clock()
        async with self.session_factory() as session:
            await session.execute(
                update(JobDescriptor)
                .where(
                    JobDescriptor.state.in_(
                        [JobState.SCHEDULED.value, JobState.RUNNING.value]
                    )
                )
                .values(state=JobState.CANCELLING.value, updated_at=now)
            )
            await session.commit()

            result = await session.execute(
                select(JobDescriptor).where(JobDescriptor.state == JobState.CANCELLING.value)
            )
            unscheduled = []
            for row in result.scalars():
                started = as_utc(row.last_started_at)
                completed = as_utc(row.last_completed_at)
                in_flight = started is not None and (completed is None or completed < started)
                if not in_flight:
                    row.state = JobState.UNSCHEDULED.value
                    row.updated_at = now
                    unscheduled.append(row.name)
            await session.commit()

        logger.info("jobs_unscheduled", jobs=unscheduled)
        return unscheduled

    async def list_descriptors(self) -> list[JobDescriptor]:
        async with self.session_factory() as session:
            result = await session.execute(select(JobDescriptor).order_by(JobDescriptor.name))
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_job(
        self, name: str, work: Callable[[], Awaitable[dict[str, Any]]]
    ) -> dict[str, Any]:
        """
        Run ``work`` as one execution of job ``name``.

        Writes a JobRun audit row. A failing run is logged and recorded; the
        next trigger retries it.
        """
        started_at = self.clock()
        if not await self.begin_run(name):
            async with self.session_factory() as session:
                session.add(
                    JobRun(
                        job_name=name,
                        started_at=started_at,
                        completed_at=started_at,
                        status="skipped",
                    )
                )
                await session.commit()
            return {"skipped": True}

        async with self.session_factory() as session:
            job_run = JobRun(job_name=name, started_at=started_at, status="running")
            session.add(job_run)
            await session.commit()

            job_status = "running"
            error_message = None
            stats: dict[str, Any] = {}
            try:
                stats = await work() or {}
                job_status = "success"
                logger.info(
                    "job_complete",
                    job=name,
                    duration_seconds=(self.clock() - started_at).total_seconds(),
                )
            except Exception as e:
                job_status = "failed"
                error_message = str(e)
                logger.error("job_failed", job=name, error=str(e), error_type=type(e).__name__)
            finally:
                job_run.completed_at = self.clock()
                job_run.status = job_status
                job_run.error_message = error_message
                job_run.records_processed = _records_processed(stats)
                job_run.job_metadata = stats
                await session.commit()
                await self.finish_run(name)

        return stats

    async def schedule_once(self, wager_id: int, eta: datetime) -> bool:
        """
        Enqueue a one-off settlement check for ``wager_id`` at ``eta``.

        Returns False when the same check is already queued.
        """
        eta = as_utc(eta)
        if self.redis is not None:
            marker = f"settle:oneoff:{wager_id}:{int(eta.timestamp())}"
            ttl = max(int((eta - self.clock()).total_seconds()), 0) + 3600
            if not await self.redis.set(marker, "1", nx=True, ex=ttl):
                logger.debug("one_off_check_already_queued", wager_id=wager_id)
                return False

        self.enqueue(wager_id, eta)
        logger.info("one_off_check_scheduled", wager_id=wager_id, eta=eta.isoformat())
        return True


def _records_processed(stats: dict[str, Any]) -> int:
    for key in ("settled", "resettled", "fixtures_cached"):
        if isinstance(stats.get(key), int):
            return stats[key]
    return 0
