"""Wager ledger.

Authoritative store of wagers and their lifecycle. ``apply_outcome`` is the
single serialization point for settlement: it locks the wager row, checks
the transition, updates status/payout/profit and posts the balance movement
in the same transaction.

Funds bookkeeping: ``credited_amount`` is what the account has received for
this wager so far. Each transition computes the amount the wager should
have credited in total (payout for settled states, the stake for
cancelled) and posts only the difference, under a reference derived from
the transition. Re-running a transition therefore never pays twice, and a
cancelled wager that is later re-evaluated only posts the adjustment.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import LedgerConsistencyError, ValidationError
from app.models.base import utcnow
from app.models.domain import DEFAULT_MAX_RETRY_COUNT, TERMINAL_STATUSES, Wager, WagerStatus
from app.services.balance import BalanceAccountService, SqlBalanceAccountService
from app.services.evaluation.evaluator import SelectionOutcome, money

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")


def target_credit(status: WagerStatus, payout: Decimal, stake: Decimal) -> Decimal:
    """Total amount a wager in ``status`` should have credited."""
    if status == WagerStatus.CANCELLED:
        return money(stake)
    if status == WagerStatus.LOST:
        return ZERO
    return money(payout)


@dataclass
class ApplyResult:
    """What ``apply_outcome`` did."""

    wager_id: int
    status: WagerStatus
    changed: bool
    funds_moved: Decimal = ZERO


class WagerLedger:
    """Wager persistence and state transitions on one session."""

    def __init__(self, session: AsyncSession, balance: BalanceAccountService | None = None):
        self.session = session
        self.balance = balance or SqlBalanceAccountService(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, wager_id: int, lock: bool = False) -> Wager | None:
        query = select(Wager).where(Wager.id == wager_id)
        if lock:
            query = query.with_for_update()
        query = query.execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_due_for_settlement(self, now: datetime, limit: int | None = None) -> list[Wager]:
        """Pending wagers whose estimated settlement time has passed."""
        query = (
            select(Wager)
            .where(
                Wager.status == WagerStatus.PENDING.value,
                Wager.estimated_settlement_time <= now,
            )
            .order_by(Wager.estimated_settlement_time, Wager.id)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_retryable(self, now: datetime, limit: int | None = None) -> list[Wager]:
        """Cancelled wagers that still have retry budget."""
        query = (
            select(Wager)
            .where(
                Wager.status == WagerStatus.CANCELLED.value,
                Wager.max_retry_count > 0,
                Wager.created_at <= now,
            )
            .order_by(Wager.updated_at, Wager.id)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_for_account(
        self,
        account_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Wager], int]:
        query = select(Wager)
        count_query = select(func.count(Wager.id))
        if account_id is not None:
            query = query.where(Wager.account_id == account_id)
            count_query = count_query.where(Wager.account_id == account_id)
        if status:
            query = query.where(Wager.status == status)
            count_query = count_query.where(Wager.status == status)

        total = (await self.session.execute(count_query)).scalar() or 0
        result = await self.session.execute(
            query.order_by(Wager.created_at.desc(), Wager.id.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, wager: Wager) -> Wager:
        """Persist a new pending wager. The caller debits and commits."""
        if wager.stake is None or wager.stake <= 0:
            raise ValidationError("Stake must be positive")
        now = utcnow()
        wager.status = WagerStatus.PENDING.value
        wager.payout = ZERO
        wager.profit = None
        wager.credited_amount = ZERO
        if wager.max_retry_count is None:
            wager.max_retry_count = DEFAULT_MAX_RETRY_COUNT
        wager.retry_count = wager.max_retry_count
        wager.created_at = wager.created_at or now
        wager.updated_at = now
        self.session.add(wager)
        await self.session.flush()
        logger.info(
            "wager_created",
            wager_id=wager.id,
            account_id=wager.account_id,
            kind=wager.kind,
            stake=str(wager.stake),
            total_odds=str(wager.total_odds),
            due=wager.estimated_settlement_time.isoformat()
            if wager.estimated_settlement_time
            else None,
        )
        return wager

    async def _lock(self, wager_id: int) -> Wager:
        wager = await self.get(wager_id, lock=True)
        if wager is None:
            raise ValidationError(f"Wager {wager_id} does not exist")
        return wager

    async def _move_funds(self, wager: Wager, status: WagerStatus, target: Decimal) -> Decimal:
        """Post ``target - credited_amount`` and record the new credited total."""
        delta = money(target - wager.credited_amount)
        if delta > 0:
            await self.balance.credit(
                wager.account_id,
                delta,
                reference=f"wager:{wager.id}:settle:{status.value}:{target}",
                wager_id=wager.id,
            )
        elif delta < 0:
            # Re-evaluated from cancelled: take back the refund difference
            await self.balance.debit(
                wager.account_id,
                -delta,
                reference=f"wager:{wager.id}:reverse:{status.value}:{target}",
                wager_id=wager.id,
                allow_overdraft=True,
            )
        wager.credited_amount = target
        return delta

    def _apply_legs(self, wager: Wager, outcomes: list[SelectionOutcome] | None) -> None:
        if not outcomes:
            return
        if not wager.is_combination:
            outcome = outcomes[0]
            wager.final_score = outcome.final_score or wager.final_score
            wager.resolved_event_id = outcome.resolved_event_id or wager.resolved_event_id
            return

        for leg, outcome in zip(wager.legs, outcomes):
            current = WagerStatus(leg.leg_status)
            if current in TERMINAL_STATUSES:
                if current != outcome.status:
                    logger.warning(
                        "leg_status_conflict_ignored",
                        wager_id=wager.id,
                        position=leg.position,
                        current=current.value,
                        evaluated=outcome.status.value,
                    )
                continue
            leg.leg_status = outcome.status.value
            leg.final_score = outcome.final_score or leg.final_score
            leg.resolved_event_id = outcome.resolved_event_id or leg.resolved_event_id

    async def apply_outcome(
        self,
        wager_id: int,
        status: WagerStatus | str,
        payout: Decimal,
        legs: list[SelectionOutcome] | None = None,
        reason: str | None = None,
        match_method: str | None = None,
        match_confidence: float | None = None,
    ) -> ApplyResult:
        """
        Move a wager to a terminal or cancelled state and settle its funds.

        Idempotent: repeating a transition the wager already went through
        changes nothing, except posting a credit that is still missing.

        Raises:
            LedgerConsistencyError: the wager already holds a different
                terminal result
        """
        status = WagerStatus(status)
        if status == WagerStatus.PENDING:
            raise ValueError("apply_outcome needs a terminal or cancelled status")

        wager = await self._lock(wager_id)
        current = WagerStatus(wager.status)
        payout = money(payout) if status != WagerStatus.CANCELLED else ZERO

        if current in TERMINAL_STATUSES or current == status:
            if current != status or money(wager.payout) != payout:
                logger.error(
                    "ledger_consistency_violation",
                    wager_id=wager_id,
                    current_status=current.value,
                    current_payout=str(wager.payout),
                    requested_status=status.value,
                    requested_payout=str(payout),
                )
                raise LedgerConsistencyError(wager_id, current.value, status.value)

            moved = await self._move_funds(
                wager, status, target_credit(status, payout, wager.stake)
            )
            if moved:
                wager.updated_at = utcnow()
                logger.warning(
                    "settlement_funds_repaired", wager_id=wager_id, amount=str(moved)
                )
            await self.session.flush()
            return ApplyResult(wager_id, status, changed=False, funds_moved=moved)

        wager.status = status.value
        wager.payout = payout
        wager.settlement_reason = reason
        if match_method:
            wager.match_method = match_method
            wager.match_confidence = Decimal(str(round(match_confidence or 0, 4)))
        if status in TERMINAL_STATUSES:
            wager.profit = money(payout - wager.stake)
            wager.settled_at = utcnow()
        self._apply_legs(wager, legs)

        moved = await self._move_funds(wager, status, target_credit(status, payout, wager.stake))
        wager.updated_at = utcnow()
        await self.session.flush()

        logger.info(
            "wager_settled" if status in TERMINAL_STATUSES else "wager_cancelled",
            wager_id=wager_id,
            previous_status=current.value,
            status=status.value,
            payout=str(payout),
            funds_moved=str(moved),
            reason=reason,
        )
        return ApplyResult(wager_id, status, changed=True, funds_moved=moved)

    async def record_leg_progress(self, wager_id: int, legs: list[SelectionOutcome]) -> None:
        """Persist leg results of a combination that is still pending."""
        wager = await self._lock(wager_id)
        if WagerStatus(wager.status) != WagerStatus.PENDING:
            return
        settled_legs = [
            o if o.status != WagerStatus.PENDING else None for o in legs
        ]
        for leg, outcome in zip(wager.legs, settled_legs):
            if outcome is None or WagerStatus(leg.leg_status) != WagerStatus.PENDING:
                continue
            leg.leg_status = outcome.status.value
            leg.final_score = outcome.final_score
            leg.resolved_event_id = outcome.resolved_event_id
        wager.updated_at = utcnow()
        await self.session.flush()

    async def reschedule(self, wager_id: int, when: datetime, reason: str | None = None) -> None:
        """Push a pending wager's next settlement check to ``when``."""
        await self.session.execute(
            update(Wager)
            .where(Wager.id == wager_id, Wager.status == WagerStatus.PENDING.value)
            .values(
                estimated_settlement_time=when,
                settlement_reason=reason,
                updated_at=utcnow(),
            )
        )
        logger.debug("wager_rescheduled", wager_id=wager_id, when=when.isoformat(), reason=reason)

    async def consume_retry(self, wager_id: int, reason: str | None = None) -> int:
        """
        Spend one unit of a cancelled wager's retry budget.

        ``retry_count`` mirrors the remaining budget from creation on, so it
        counts down with every unresolved pass. At zero the wager stays
        cancelled and drops out of ``find_retryable``.
        """
        wager = await self._lock(wager_id)
        if WagerStatus(wager.status) != WagerStatus.CANCELLED or wager.max_retry_count <= 0:
            return max(wager.max_retry_count, 0)
        wager.max_retry_count -= 1
        wager.retry_count = wager.max_retry_count
        if reason:
            wager.settlement_reason = reason
        wager.updated_at = utcnow()
        await self.session.flush()
        if wager.max_retry_count == 0:
            logger.warning("wager_retry_budget_exhausted", wager_id=wager_id, reason=reason)
        return wager.max_retry_count

    async def cancel_wager(self, wager_id: int, reason: str = "cancelled by operator") -> ApplyResult:
        """
        Cancel a pending wager for good: refund the stake, no retries.
        """
        wager = await self._lock(wager_id)
        if WagerStatus(wager.status) != WagerStatus.PENDING:
            raise ValidationError(f"Only pending wagers can be cancelled, {wager_id} is {wager.status}")
        wager.max_retry_count = 0
        wager.retry_count = 0
        return await self.apply_outcome(wager_id, WagerStatus.CANCELLED, ZERO, reason=reason)

    async def backfill_profit(self) -> int:
        """
        One-time recomputation of profit for settled rows that predate it.

        Rows that already carry a profit are never touched.
        """
        result = await self.session.execute(
            update(Wager)
            .where(
                Wager.profit.is_(None),
                Wager.status.in_([s.value for s in TERMINAL_STATUSES]),
            )
            .values(profit=Wager.payout - Wager.stake)
        )
        count = result.rowcount or 0
        if count:
            logger.info("profit_backfilled", wagers=count)
        return count
