"""Settlement service.

Drives one wager from "due" to a ledger transition, and runs the sweeps
that do this in bulk:

- settlement sweep: pending wagers past their estimated settlement time,
  fanned out under a semaphore, one database session per wager
- retry sweep: cancelled wagers with retry budget left, strictly one at a
  time with a fixed spacing, each pass spending one unit of budget
- recovery pass: queued once when a worker starts, settles everything
  that fell due while nothing was running (retry budget is untouched)

Network calls happen between two short sessions: the wager is read,
resolved without holding a connection, then written under a row lock.
Per-wager failures are logged and counted, never raised out of a sweep.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settlement_config
from app.config.settlement import SettlementConfig
from app.errors import AmbiguousMatchError, NotFinishedError, ProviderError
from app.models.base import as_utc, utcnow
from app.models.domain import TERMINAL_STATUSES, WagerStatus
from app.services.balance import BalanceAccountService, SqlBalanceAccountService
from app.services.evaluation import (
    Evaluation,
    SelectionOutcome,
    aggregate_legs,
    evaluate_selection,
    single_payout,
)
from app.services.ledger import WagerLedger
from app.services.markets import MarketKind, SelectionView
from app.services.resolver import MatchResultResolver

logger = structlog.get_logger(__name__)


class SettleOutcome(str, Enum):
    """What one settlement attempt did to a wager."""

    SETTLED = "settled"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    UNRESOLVED = "unresolved"
    SKIPPED = "skipped"
    MISSING = "missing"


@dataclass
class LegPlan:
    """Snapshot of one selection taken before resolving it."""

    view: SelectionView
    event_id: str | None
    home_name: str
    away_name: str
    event_start_time: datetime | None
    settled: SelectionOutcome | None = None


@dataclass
class WagerSnapshot:
    wager_id: int
    status: WagerStatus
    stake: Decimal
    is_combination: bool
    max_retry_count: int
    event_start_time: datetime | None
    legs: list[LegPlan] = field(default_factory=list)


@dataclass
class ResolutionPass:
    """Per-leg outcomes plus why anything is still open."""

    outcomes: list[SelectionOutcome]
    provider_failed: bool = False
    unmatched: bool = False
    match_method: str | None = None
    match_confidence: float | None = None


def selection_view(row) -> SelectionView:
    """Build the evaluator's view of a wager or leg row."""
    try:
        kind = MarketKind(row.market_kind)
    except ValueError:
        kind = MarketKind.PROVIDER_SETTLED
    return SelectionView(
        market_kind=kind,
        selection_id=row.selection_id or "",
        selection_label=row.selection_label or "",
        odds=Decimal(row.odds_at_placement or 1),
        line=row.line,
        home_name=row.home_name,
        away_name=row.away_name,
    )


def _leg_plan(row, leg_status: WagerStatus | None = None) -> LegPlan:
    settled = None
    if leg_status is not None and leg_status in TERMINAL_STATUSES:
        settled = SelectionOutcome(
            leg_status, "settled earlier", row.final_score, row.resolved_event_id
        )
    return LegPlan(
        view=selection_view(row),
        event_id=row.event_id,
        home_name=row.home_name or "",
        away_name=row.away_name or "",
        event_start_time=as_utc(row.event_start_time),
        settled=settled,
    )


class SettlementService:
    """Settle wagers against resolved match results."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: MatchResultResolver,
        config: SettlementConfig | None = None,
        balance_factory: Callable[[AsyncSession], BalanceAccountService] | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.config = config or get_settlement_config()
        self.balance_factory = balance_factory or SqlBalanceAccountService
        self.clock = clock
        self.sleep = sleep

    def _ledger(self, session: AsyncSession) -> WagerLedger:
        return WagerLedger(session, self.balance_factory(session))

    async def _snapshot(self, wager_id: int) -> WagerSnapshot | None:
        async with self.session_factory() as session:
            wager = await self._ledger(session).get(wager_id)
            if wager is None:
                return None
            snapshot = WagerSnapshot(
                wager_id=wager.id,
                status=WagerStatus(wager.status),
                stake=Decimal(wager.stake),
                is_combination=wager.is_combination,
                max_retry_count=wager.max_retry_count,
                event_start_time=as_utc(wager.event_start_time),
            )
            if wager.is_combination:
                snapshot.legs = [_leg_plan(leg, WagerStatus(leg.leg_status)) for leg in wager.legs]
            else:
                snapshot.legs = [_leg_plan(wager)]
            return snapshot

    async def _resolve_legs(self, snapshot: WagerSnapshot) -> ResolutionPass:
        outcomes = []
        resolution = ResolutionPass(outcomes=outcomes)
        for leg in snapshot.legs:
            if leg.settled is not None:
                outcomes.append(leg.settled)
                continue
            try:
                result = await self.resolver.resolve(
                    leg.event_id, leg.home_name, leg.away_name, leg.event_start_time
                )
            except NotFinishedError as e:
                outcomes.append(SelectionOutcome(WagerStatus.PENDING, str(e)))
                continue
            except AmbiguousMatchError as e:
                resolution.unmatched = True
                outcomes.append(SelectionOutcome(WagerStatus.PENDING, f"unmatched: {e}"))
                continue
            except ProviderError as e:
                resolution.provider_failed = True
                logger.warning(
                    "provider_error_during_settlement",
                    wager_id=snapshot.wager_id,
                    event_id=leg.event_id,
                    error_type=e.error_type.value,
                    error=str(e),
                )
                outcomes.append(SelectionOutcome(WagerStatus.PENDING, f"provider error: {e}"))
                continue

            outcomes.append(evaluate_selection(leg.view, result))
            if resolution.match_confidence is None or result.confidence < resolution.match_confidence:
                resolution.match_method = result.method
                resolution.match_confidence = result.confidence
        return resolution

    def _evaluate(self, snapshot: WagerSnapshot, outcomes: list[SelectionOutcome]) -> Evaluation:
        if snapshot.is_combination:
            return aggregate_legs(
                snapshot.stake, [(leg.view, o) for leg, o in zip(snapshot.legs, outcomes)]
            )
        outcome = outcomes[0]
        return Evaluation(
            status=outcome.status,
            payout=single_payout(snapshot.stake, snapshot.legs[0].view.odds, outcome.status),
            reason=outcome.reason,
            legs=[outcome],
        )

    def _unresolved_too_long(self, snapshot: WagerSnapshot, now: datetime) -> bool:
        if snapshot.event_start_time is None:
            return False
        cap = timedelta(hours=self.config.timing.unresolved_cancel_after_hours)
        return now - snapshot.event_start_time >= cap

    async def settle_wager(
        self, wager_id: int, now: datetime | None = None, retry: bool = False
    ) -> SettleOutcome:
        """
        Resolve, evaluate and record one wager.

        ``retry`` allows re-evaluating a cancelled wager; the caller is
        responsible for spending its retry budget. Errors from the ledger
        propagate.
        """
        now = now or self.clock()
        snapshot = await self._snapshot(wager_id)
        if snapshot is None:
            logger.warning("wager_missing", wager_id=wager_id)
            return SettleOutcome.MISSING
        if snapshot.status in TERMINAL_STATUSES:
            return SettleOutcome.SKIPPED
        if snapshot.status == WagerStatus.CANCELLED and (
            not retry or snapshot.max_retry_count <= 0
        ):
            return SettleOutcome.SKIPPED

        resolution = await self._resolve_legs(snapshot)
        evaluation = self._evaluate(snapshot, resolution.outcomes)
        was_cancelled = snapshot.status == WagerStatus.CANCELLED

        async with self.session_factory() as session:
            ledger = self._ledger(session)
            try:
                outcome = await self._record(
                    ledger, snapshot, resolution, evaluation, now, was_cancelled
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.debug(
            "wager_settlement_attempt",
            wager_id=wager_id,
            outcome=outcome.value,
            evaluated_status=evaluation.status.value,
            reason=evaluation.reason,
        )
        return outcome

    async def _record(
        self,
        ledger: WagerLedger,
        snapshot: WagerSnapshot,
        resolution: ResolutionPass,
        evaluation: Evaluation,
        now: datetime,
        was_cancelled: bool,
    ) -> SettleOutcome:
        wager_id = snapshot.wager_id

        if evaluation.status in TERMINAL_STATUSES:
            await ledger.apply_outcome(
                wager_id,
                evaluation.status,
                evaluation.payout,
                legs=evaluation.legs,
                reason=evaluation.reason,
                match_method=resolution.match_method,
                match_confidence=resolution.match_confidence,
            )
            return SettleOutcome.SETTLED

        if was_cancelled:
            return SettleOutcome.UNRESOLVED

        if evaluation.status == WagerStatus.CANCELLED:
            await ledger.apply_outcome(
                wager_id, WagerStatus.CANCELLED, Decimal("0"),
                legs=evaluation.legs, reason=evaluation.reason,
            )
            return SettleOutcome.CANCELLED

        # Still pending
        if snapshot.is_combination:
            await ledger.record_leg_progress(wager_id, evaluation.legs)

        if self._unresolved_too_long(snapshot, now):
            hours = self.config.timing.unresolved_cancel_after_hours
            reason = f"unresolved {hours}h after start: {evaluation.reason}"
            legs = [
                SelectionOutcome(WagerStatus.CANCELLED, reason)
                if leg.status == WagerStatus.PENDING
                else leg
                for leg in evaluation.legs
            ]
            await ledger.apply_outcome(
                wager_id, WagerStatus.CANCELLED, Decimal("0"), legs=legs, reason=reason
            )
            return SettleOutcome.CANCELLED

        timing = self.config.timing
        delay = (
            timing.provider_error_recheck_minutes
            if resolution.provider_failed
            else timing.not_finished_recheck_minutes
        )
        await ledger.reschedule(
            wager_id, now + timedelta(minutes=delay), reason=evaluation.reason
        )
        return SettleOutcome.RESCHEDULED

    async def run_settlement_sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Settle every pending wager that is due, a few at a time."""
        now = now or self.clock()
        async with self.session_factory() as session:
            due = await self._ledger(session).find_due_for_settlement(now)
        wager_ids = list(dict.fromkeys(w.id for w in due))

        stats = {
            "due": len(wager_ids),
            "settled": 0,
            "cancelled": 0,
            "rescheduled": 0,
            "skipped": 0,
            "errors": 0,
        }
        semaphore = asyncio.Semaphore(self.config.sweeps.settlement_concurrency)

        async def settle_one(wager_id: int) -> None:
            async with semaphore:
                try:
                    outcome = await self.settle_wager(wager_id, now)
                except Exception as e:
                    logger.error(
                        "wager_settlement_failed",
                        wager_id=wager_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    stats["errors"] += 1
                    return
                key = outcome.value if outcome.value in stats else "skipped"
                stats[key] += 1

        await asyncio.gather(*(settle_one(wager_id) for wager_id in wager_ids))
        logger.info("settlement_sweep_complete", **stats)
        return stats

    async def run_retry_sweep(self, now: datetime | None = None) -> dict[str, int]:
        """
        Re-evaluate cancelled wagers that still have retry budget.

        Sequential, with a pause between wagers to stay under provider limits.
        Every pass that does not settle the wager costs one unit of budget.
        """
        now = now or self.clock()
        async with self.session_factory() as session:
            retryable = await self._ledger(session).find_retryable(now)
        wager_ids = list(dict.fromkeys(w.id for w in retryable))

        stats = {
            "retryable": len(wager_ids),
            "resettled": 0,
            "still_cancelled": 0,
            "exhausted": 0,
            "errors": 0,
        }

        for index, wager_id in enumerate(wager_ids):
            if index:
                await self.sleep(self.config.sweeps.retry_spacing_seconds)
            try:
                outcome = await self.settle_wager(wager_id, now, retry=True)
            except Exception as e:
                logger.error(
                    "wager_retry_failed",
                    wager_id=wager_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                stats["errors"] += 1
                outcome = SettleOutcome.UNRESOLVED

            if outcome == SettleOutcome.SETTLED:
                stats["resettled"] += 1
                continue
            if outcome != SettleOutcome.UNRESOLVED:
                continue

            try:
                async with self.session_factory() as session:
                    remaining = await self._ledger(session).consume_retry(
                        wager_id, reason="retry pass unresolved"
                    )
                    await session.commit()
            except Exception as e:
                logger.error("retry_budget_update_failed", wager_id=wager_id, error=str(e))
                stats["errors"] += 1
                continue
            stats["still_cancelled"] += 1
            if remaining == 0:
                stats["exhausted"] += 1

        logger.info("retry_sweep_complete", **stats)
        return stats

    async def run_recovery_pass(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Catch up after a restart.

        Backfills profit on legacy rows, then settles every pending wager that
        fell due while no worker was running. Cancelled wagers are left to the
        retry sweep: a restart must not spend retry budget.
        """
        now = now or self.clock()
        async with self.session_factory() as session:
            backfilled = await self._ledger(session).backfill_profit()
            await session.commit()

        settlement = await self.run_settlement_sweep(now)
        stats = {"profit_backfilled": backfilled, **settlement}
        logger.info("recovery_pass_complete", **stats)
        return stats
