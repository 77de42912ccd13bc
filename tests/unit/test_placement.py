"""Unit tests for wager placement."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.config.settlement import SettlementConfig
from app.errors import InsufficientFundsError, ValidationError
from app.models import Account, BalanceEntry, Wager, WagerKind
from app.models.base import as_utc, utcnow
from app.services.markets import MarketKind
from app.services.placement import PlacementService, estimated_settlement_time

from tests.conftest import selection_request


async def wager_count(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count(Wager.id)))


class RecordingScheduler:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    async def __call__(self, wager_id, eta):
        self.calls.append((wager_id, eta))
        if self.fail:
            raise ConnectionError("broker down")
        return True


class TestEstimatedSettlementTime:
    def test_kick_off_plus_delay(self):
        start = datetime(2026, 10, 18, 15, tzinfo=timezone.utc)
        now = start - timedelta(days=1)
        due = estimated_settlement_time(start, now, SettlementConfig())
        assert due == start + timedelta(minutes=125)

    def test_past_due_becomes_grace_after_now(self):
        start = datetime(2026, 10, 18, 15, tzinfo=timezone.utc)
        now = start + timedelta(hours=5)
        assert estimated_settlement_time(start, now, SettlementConfig()) == now + timedelta(minutes=5)


class TestPlaceSingle:
    async def test_debits_stake_and_classifies(self, session_factory, make_account):
        account_id = await make_account("50.00")
        scheduler = RecordingScheduler()
        start = utcnow() + timedelta(days=1)
        async with session_factory() as session:
            wager = await PlacementService(session, scheduler=scheduler).place_single(
                account_id,
                "12.50",
                selection_request(
                    market_name="Asian Handicap", selection_label="Arsenal -0.75", odds="1.95", start=start
                ),
            )

        assert wager.kind == WagerKind.SINGLE.value
        assert wager.market_kind == MarketKind.ASIAN_HANDICAP.value
        assert wager.line == Decimal("-0.75")
        assert wager.total_odds == Decimal("1.95")
        assert wager.max_retry_count == 3
        assert scheduler.calls == [(wager.id, start + timedelta(minutes=125))]

        async with session_factory() as session:
            account = await session.get(Account, account_id)
            entry = await session.scalar(
                select(BalanceEntry).where(BalanceEntry.reference == f"wager:{wager.id}:stake")
            )
        assert account.balance == Decimal("37.50")
        assert entry.amount == Decimal("12.50")

    @pytest.mark.parametrize("stake", ["0", "-1", "0.001", "abc"])
    async def test_rejects_bad_stake(self, session_factory, make_account, stake):
        account_id = await make_account()
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await PlacementService(session).place_single(account_id, stake, selection_request())

    async def test_rejects_low_odds(self, session_factory, make_account):
        account_id = await make_account()
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await PlacementService(session).place_single(
                    account_id, "5", selection_request(odds="1.00")
                )

    async def test_rejects_missing_selection(self, session_factory, make_account):
        account_id = await make_account()
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await PlacementService(session).place_single(
                    account_id, "5", selection_request(event_id="")
                )

    async def test_insufficient_funds_leaves_nothing(self, session_factory, make_account):
        """A failed debit rolls back the wager row too."""
        account_id = await make_account("5.00")
        async with session_factory() as session:
            with pytest.raises(InsufficientFundsError):
                await PlacementService(session).place_single(account_id, "10", selection_request())

        assert await wager_count(session_factory) == 0
        async with session_factory() as session:
            assert (await session.get(Account, account_id)).balance == Decimal("5.00")

    async def test_scheduler_failure_keeps_wager(self, session_factory, make_account):
        account_id = await make_account()
        scheduler = RecordingScheduler(fail=True)
        async with session_factory() as session:
            wager = await PlacementService(session, scheduler=scheduler).place_single(
                account_id, "5", selection_request()
            )
        assert wager.id is not None
        assert len(scheduler.calls) == 1
        assert await wager_count(session_factory) == 1


class TestPlaceCombination:
    async def test_legs_and_total_odds(self, session_factory, make_account):
        account_id = await make_account("100.00")
        early = utcnow() + timedelta(hours=2)
        late = utcnow() + timedelta(hours=6)
        selections = [
            selection_request(event_id="e1", odds="1.50", start=early),
            selection_request(event_id="e2", market_name="Both Teams To Score", selection_label="Yes", odds="1.85", start=late),
            selection_request(event_id="e3", market_name="Total Goals", selection_label="Over 2.5", odds="2.10", start=early),
        ]
        async with session_factory() as session:
            wager = await PlacementService(session).place_combination(account_id, "10", selections)

        assert wager.kind == WagerKind.COMBINATION.value
        assert wager.total_odds == Decimal("5.828")
        assert [leg.position for leg in wager.legs] == [0, 1, 2]
        assert wager.legs[2].market_kind == MarketKind.TOTAL_GOALS.value
        assert wager.legs[2].line == Decimal("2.5")
        assert as_utc(wager.estimated_settlement_time) == late + timedelta(minutes=125)

    async def test_needs_two_legs(self, session_factory, make_account):
        account_id = await make_account()
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await PlacementService(session).place_combination(
                    account_id, "10", [selection_request()]
                )

    async def test_rejects_repeated_event(self, session_factory, make_account):
        account_id = await make_account()
        selections = [
            selection_request(event_id="e1"),
            selection_request(event_id="e1", market_name="Both Teams To Score", selection_label="Yes"),
        ]
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await PlacementService(session).place_combination(account_id, "10", selections)

    async def test_rejects_two_selections_in_one_market(self, session_factory, make_account):
        account_id = await make_account()
        selections = [selection_request(event_id="e1"), selection_request(event_id="e1", selection_label="X")]
        async with session_factory() as session:
            with pytest.raises(ValidationError, match="market"):
                await PlacementService(session).place_combination(account_id, "10", selections)

    async def test_leg_limit(self, session_factory, make_account):
        account_id = await make_account()
        config = SettlementConfig()
        config.placement.max_legs = 2
        selections = [selection_request(event_id=f"e{i}") for i in range(3)]
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await PlacementService(session, config=config).place_combination(
                    account_id, "10", selections
                )
