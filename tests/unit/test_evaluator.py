"""Unit tests for the outcome evaluator.

Covers the settlement arithmetic: half-win/half-loss payouts, combination
aggregation (loss dominates, pending blocks, void legs drop out) and the
precedence of provider outcome flags over our own score evaluation.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.models.domain import WagerStatus
from app.services.evaluation import (
    SelectionOutcome,
    aggregate_legs,
    evaluate_combination,
    evaluate_selection,
    evaluate_single,
    leg_factor,
    single_payout,
)
from app.services.markets import MarketKind, Score, SelectionView
from app.services.provider.schemas import MarketOutcome, MatchResult, ProviderEvent


def make_result(home=2, away=1, finished=True, abandoned=False, outcomes=None, score=True):
    return MatchResult(
        event=ProviderEvent(
            event_id="ev-1",
            home_name="Arsenal",
            away_name="Chelsea",
            start_time=datetime(2026, 10, 18, 15, tzinfo=timezone.utc),
            status="finished" if finished else "live",
            finished=finished,
            abandoned=abandoned,
            score=Score(home, away) if score else None,
            market_outcomes=outcomes or [],
        )
    )


def selection(kind=MarketKind.MATCH_RESULT, label="1", odds="2.00", line=None, sid="s-1"):
    return SelectionView(
        market_kind=kind,
        selection_id=sid,
        selection_label=label,
        odds=Decimal(odds),
        line=Decimal(line) if line is not None else None,
        home_name="Arsenal",
        away_name="Chelsea",
    )


class TestSinglePayout:
    """Payout of a single selection per status."""

    def test_won_pays_stake_times_odds(self):
        assert single_payout(Decimal("10"), Decimal("2.5"), WagerStatus.WON) == Decimal("25.00")

    def test_half_won_arithmetic(self):
        """Half the stake wins at full odds, the other half is returned."""
        payout = single_payout(Decimal("10"), Decimal("1.90"), WagerStatus.HALF_WON)
        assert payout == Decimal("14.50")

    def test_half_lost_returns_half_stake(self):
        assert single_payout(Decimal("10"), Decimal("1.90"), WagerStatus.HALF_LOST) == Decimal("5.00")

    def test_void_returns_stake(self):
        assert single_payout(Decimal("10"), Decimal("3.00"), WagerStatus.VOID) == Decimal("10.00")

    def test_lost_and_pending_pay_nothing(self):
        assert single_payout(Decimal("10"), Decimal("3"), WagerStatus.LOST) == Decimal("0.00")
        assert single_payout(Decimal("10"), Decimal("3"), WagerStatus.PENDING) == Decimal("0.00")

    def test_rounds_half_up_to_cents(self):
        assert single_payout(Decimal("3.33"), Decimal("1.5"), WagerStatus.WON) == Decimal("5.00")


class TestEvaluateSelection:
    """Status of one selection against a result."""

    def test_unfinished_is_pending(self):
        outcome = evaluate_selection(selection(), make_result(finished=False))
        assert outcome.status == WagerStatus.PENDING

    def test_missing_result_is_pending(self):
        assert evaluate_selection(selection(), None).status == WagerStatus.PENDING

    def test_abandoned_event_is_void(self):
        outcome = evaluate_selection(selection(), make_result(abandoned=True))
        assert outcome.status == WagerStatus.VOID

    def test_evaluates_from_score(self):
        outcome = evaluate_selection(selection(label="1"), make_result(2, 1))
        assert outcome.status == WagerStatus.WON
        assert outcome.final_score == "2-1"
        assert outcome.resolved_event_id == "ev-1"

    def test_provider_flag_wins_over_score(self):
        """A provider 'lost' flag overrides a score that says won."""
        result = make_result(2, 1, outcomes=[MarketOutcome("s-1", won=False)])
        assert evaluate_selection(selection(label="1"), result).status == WagerStatus.LOST

    def test_provider_void_flag(self):
        result = make_result(2, 1, outcomes=[MarketOutcome("s-1", void=True)])
        assert evaluate_selection(selection(), result).status == WagerStatus.VOID

    def test_unsettleable_selection_is_cancelled(self):
        """Provider-only market without a flag cannot be guessed."""
        outcome = evaluate_selection(selection(kind=MarketKind.PROVIDER_SETTLED), make_result())
        assert outcome.status == WagerStatus.CANCELLED

    def test_finished_without_score_is_cancelled(self):
        outcome = evaluate_selection(selection(), make_result(score=False))
        assert outcome.status == WagerStatus.CANCELLED

    def test_quarter_line_half_win(self):
        """Over 2.25: three goals wins both halves, two goals loses one half."""
        over = selection(kind=MarketKind.TOTAL_GOALS, label="Over 2.25", odds="1.90", line="2.25")
        assert evaluate_selection(over, make_result(2, 1)).status == WagerStatus.WON
        assert evaluate_selection(over, make_result(1, 1)).status == WagerStatus.HALF_LOST


class TestEvaluateSingle:
    def test_half_won_single(self):
        """Quarter handicaps on a draw: -0.25 loses half, +0.25 wins half."""
        sel = selection(kind=MarketKind.ASIAN_HANDICAP, label="Arsenal -0.25", odds="2.00", line="-0.25")
        drawn = evaluate_single(Decimal("20"), sel, make_result(1, 1))
        assert drawn.status == WagerStatus.HALF_LOST
        assert drawn.payout == Decimal("10.00")

        plus = selection(kind=MarketKind.ASIAN_HANDICAP, label="Chelsea +0.25", odds="2.00", line="0.25")
        evaluation = evaluate_single(Decimal("20"), plus, make_result(1, 1))
        assert evaluation.status == WagerStatus.HALF_WON
        assert evaluation.payout == Decimal("30.00")
        assert evaluation.profit(Decimal("20")) == Decimal("10.00")


class TestCombination:
    """Combination aggregation."""

    def leg(self, status, odds="2.00"):
        return (selection(odds=odds), SelectionOutcome(status, status.value))

    def test_any_lost_leg_loses(self):
        evaluation = aggregate_legs(
            Decimal("10"),
            [self.leg(WagerStatus.WON), self.leg(WagerStatus.LOST), self.leg(WagerStatus.PENDING)],
        )
        assert evaluation.status == WagerStatus.LOST
        assert evaluation.payout == Decimal("0.00")

    def test_pending_leg_keeps_pending(self):
        evaluation = aggregate_legs(
            Decimal("10"), [self.leg(WagerStatus.WON), self.leg(WagerStatus.PENDING)]
        )
        assert evaluation.status == WagerStatus.PENDING

    def test_cancelled_leg_cancels(self):
        evaluation = aggregate_legs(
            Decimal("10"), [self.leg(WagerStatus.WON), self.leg(WagerStatus.CANCELLED)]
        )
        assert evaluation.status == WagerStatus.CANCELLED

    def test_void_leg_excluded_from_odds(self):
        """A void leg multiplies by 1: won legs alone define the payout."""
        evaluation = aggregate_legs(
            Decimal("10"),
            [self.leg(WagerStatus.WON, "2.00"), self.leg(WagerStatus.VOID, "5.00"), self.leg(WagerStatus.WON, "1.50")],
        )
        assert evaluation.status == WagerStatus.WON
        assert evaluation.payout == Decimal("30.00")

    def test_all_void_returns_stake(self):
        evaluation = aggregate_legs(
            Decimal("10"), [self.leg(WagerStatus.VOID), self.leg(WagerStatus.VOID)]
        )
        assert evaluation.status == WagerStatus.VOID
        assert evaluation.payout == Decimal("10.00")

    def test_half_won_leg_factor(self):
        evaluation = aggregate_legs(
            Decimal("10"), [self.leg(WagerStatus.WON, "2.00"), self.leg(WagerStatus.HALF_WON, "2.00")]
        )
        # 10 × 2 × (1 + 2) / 2
        assert evaluation.payout == Decimal("30.00")
        assert evaluation.status == WagerStatus.HALF_WON

    def test_half_lost_below_stake(self):
        evaluation = aggregate_legs(
            Decimal("10"), [self.leg(WagerStatus.VOID), self.leg(WagerStatus.HALF_LOST)]
        )
        assert evaluation.payout == Decimal("5.00")
        assert evaluation.status == WagerStatus.HALF_LOST

    def test_half_legs_returning_the_stake_are_void(self):
        """2.00 won × half lost gives a factor of exactly 1."""
        evaluation = aggregate_legs(
            Decimal("10"), [self.leg(WagerStatus.WON, "2.00"), self.leg(WagerStatus.HALF_LOST)]
        )
        assert evaluation.payout == Decimal("10.00")
        assert evaluation.status == WagerStatus.VOID
        assert evaluation.profit(Decimal("10")) == Decimal("0.00")

    def test_evaluate_combination_end_to_end(self):
        legs = [
            (selection(label="1", odds="1.80", sid="a"), make_result(3, 0)),
            (selection(kind=MarketKind.BOTH_TEAMS_TO_SCORE, label="No", odds="2.10", sid="b"), make_result(3, 0)),
        ]
        evaluation = evaluate_combination(Decimal("10"), legs)
        assert evaluation.status == WagerStatus.WON
        assert evaluation.payout == Decimal("37.80")
        assert len(evaluation.legs) == 2

    def test_leg_factor_rejects_unsettled(self):
        with pytest.raises(ValueError):
            leg_factor(WagerStatus.PENDING, Decimal("2"))
