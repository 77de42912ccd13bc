"""Wager placement.

Validates a request synchronously, classifies every selection's market
once, debits the stake and creates the wager in one transaction, then asks
the scheduler for a one-off settlement check at the estimated end of the
event. The recurring sweep still covers a wager whose one-off check could
not be enqueued.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settlement_config
from app.config.settlement import SettlementConfig
from app.errors import ValidationError
from app.models.base import as_utc, utcnow
from app.models.domain import Wager, WagerKind, WagerLeg
from app.services.balance import BalanceAccountService, SqlBalanceAccountService
from app.services.ledger import WagerLedger
from app.services.markets import classify_market, extract_line

logger = structlog.get_logger(__name__)

OneOffScheduler = Callable[[int, datetime], Awaitable[bool]]


@dataclass
class SelectionRequest:
    """One selection as submitted by the client."""

    event_id: str
    market_name: str
    selection_id: str
    selection_label: str
    odds: Decimal
    home_name: str
    away_name: str
    event_start_time: datetime
    market_id: str | None = None


def estimated_settlement_time(
    start: datetime, now: datetime, config: SettlementConfig | None = None
) -> datetime:
    """
    When the event should be over: kick-off plus the configured delay.

    A time already in the past (late or in-play placement) becomes a check
    shortly after now.
    """
    timing = (config or get_settlement_config()).timing
    due = as_utc(start) + timedelta(minutes=timing.settlement_delay_minutes)
    if due <= now:
        due = now + timedelta(minutes=timing.past_due_grace_minutes)
    return due


def _decimal(value, field_name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} is not a number: {value!r}") from e


class PlacementService:
    """Place single and combination wagers for an account."""

    def __init__(
        self,
        session: AsyncSession,
        scheduler: OneOffScheduler | None = None,
        balance: BalanceAccountService | None = None,
        config: SettlementConfig | None = None,
    ):
        self.session = session
        self.scheduler = scheduler
        self.balance = balance or SqlBalanceAccountService(session)
        self.ledger = WagerLedger(session, self.balance)
        self.config = config or get_settlement_config()

    def _validate_selection(self, selection: SelectionRequest) -> Decimal:
        if not selection.event_id or not selection.selection_id:
            raise ValidationError("A selection needs an event id and a selection id")
        if not selection.selection_label:
            raise ValidationError(f"Selection {selection.selection_id} has no label")
        if selection.event_start_time is None:
            raise ValidationError(f"Selection {selection.selection_id} has no event start time")
        odds = _decimal(selection.odds, "odds")
        if odds < self.config.placement.min_odds:
            raise ValidationError(
                f"Odds {odds} below minimum {self.config.placement.min_odds}"
            )
        return odds

    def _validate_stake(self, stake) -> Decimal:
        stake = _decimal(stake, "stake")
        if stake < self.config.placement.min_stake:
            raise ValidationError(f"Stake {stake} below minimum {self.config.placement.min_stake}")
        if stake != stake.quantize(Decimal("0.01")):
            raise ValidationError(f"Stake {stake} has more than two decimals")
        return stake

    def _selection_columns(self, selection: SelectionRequest, odds: Decimal, now: datetime) -> dict:
        kind = classify_market(selection.market_name, selection.selection_label)
        start = as_utc(selection.event_start_time)
        return {
            "market_id": selection.market_id,
            "market_name": selection.market_name,
            "market_kind": kind.value,
            "selection_id": selection.selection_id,
            "selection_label": selection.selection_label,
            "line": extract_line(kind, selection.selection_label),
            "odds_at_placement": odds,
            "event_id": selection.event_id,
            "home_name": selection.home_name,
            "away_name": selection.away_name,
            "event_start_time": start,
            "estimated_settlement_time": estimated_settlement_time(start, now, self.config),
        }

    async def place_single(
        self,
        account_id: int,
        stake,
        selection: SelectionRequest,
        inplay: bool = False,
    ) -> Wager:
        """
        Place a single wager.

        Raises:
            ValidationError: bad stake, odds or selection
            InsufficientFundsError: balance below stake
        """
        stake = self._validate_stake(stake)
        odds = self._validate_selection(selection)
        now = utcnow()

        wager = Wager(
            account_id=account_id,
            kind=WagerKind.SINGLE.value,
            stake=stake,
            total_odds=odds,
            inplay=inplay,
            max_retry_count=self.config.sweeps.default_max_retry_count,
            **self._selection_columns(selection, odds, now),
        )
        return await self._persist(wager)

    async def place_combination(
        self,
        account_id: int,
        stake,
        selections: list[SelectionRequest],
    ) -> Wager:
        """
        Place a combination over 2..max_legs selections on distinct events.

        Raises:
            ValidationError: bad stake, leg count, odds or conflicting legs
            InsufficientFundsError: balance below stake
        """
        stake = self._validate_stake(stake)
        max_legs = self.config.placement.max_legs
        if not 2 <= len(selections) <= max_legs:
            raise ValidationError(f"A combination needs 2 to {max_legs} legs, got {len(selections)}")

        seen_events: set[str] = set()
        seen_markets: set[tuple[str, str]] = set()
        odds_per_leg = []
        for selection in selections:
            odds_per_leg.append(self._validate_selection(selection))
            market = (selection.event_id, selection.market_id or selection.market_name)
            if market in seen_markets:
                raise ValidationError(
                    f"Two selections on market {market[1]} of event {selection.event_id}"
                )
            seen_markets.add(market)
            if selection.event_id in seen_events:
                raise ValidationError(f"Event {selection.event_id} appears in more than one leg")
            seen_events.add(selection.event_id)

        now = utcnow()
        total_odds = Decimal("1")
        legs = []
        for position, (selection, odds) in enumerate(zip(selections, odds_per_leg)):
            total_odds *= odds
            legs.append(
                WagerLeg(position=position, **self._selection_columns(selection, odds, now))
            )

        wager = Wager(
            account_id=account_id,
            kind=WagerKind.COMBINATION.value,
            stake=stake,
            total_odds=total_odds.quantize(Decimal("0.001")),
            max_retry_count=self.config.sweeps.default_max_retry_count,
            estimated_settlement_time=max(leg.estimated_settlement_time for leg in legs),
            event_start_time=max(leg.event_start_time for leg in legs),
            legs=legs,
        )
        return await self._persist(wager)

    async def _persist(self, wager: Wager) -> Wager:
        try:
            await self.ledger.create(wager)
            await self.balance.debit(
                wager.account_id,
                wager.stake,
                reference=f"wager:{wager.id}:stake",
                wager_id=wager.id,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if self.scheduler is not None:
            try:
                await self.scheduler(wager.id, wager.estimated_settlement_time)
            except Exception as e:
                # The settlement sweep picks the wager up when it falls due
                logger.warning("one_off_check_not_scheduled", wager_id=wager.id, error=str(e))
        return wager
