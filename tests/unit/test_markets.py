"""Unit tests for market kinds, classification and odds grouping."""

from decimal import Decimal

import pytest

from app.models.domain import WagerStatus
from app.services.markets import (
    MarketKind,
    Score,
    SelectionNotSettleable,
    SelectionView,
    classify_market,
    extract_line,
    group_odds,
    settle_line,
)


def view(kind, label, line=None):
    return SelectionView(
        market_kind=kind,
        selection_id="s",
        selection_label=label,
        odds=Decimal("2"),
        line=Decimal(line) if line is not None else None,
        home_name="Real Betis",
        away_name="Sevilla",
    )


class TestSettleLine:
    """Whole, half and quarter lines."""

    def test_whole_line_push_is_void(self):
        assert settle_line(Decimal(2), Decimal(2)) == WagerStatus.VOID

    def test_half_line_never_pushes(self):
        assert settle_line(Decimal(3), Decimal("2.5")) == WagerStatus.WON
        assert settle_line(Decimal(2), Decimal("2.5")) == WagerStatus.LOST

    def test_quarter_line_splits(self):
        assert settle_line(Decimal(3), Decimal("2.75")) == WagerStatus.HALF_WON
        assert settle_line(Decimal(2), Decimal("2.25")) == WagerStatus.HALF_LOST

    def test_negative_quarter_line(self):
        assert settle_line(Decimal(0), Decimal("-0.25")) == WagerStatus.HALF_WON


class TestMarketKinds:
    """Per-kind evaluation against a final score."""

    def test_match_result_by_team_name(self):
        kind = MarketKind.MATCH_RESULT
        assert kind.evaluate(view(kind, "Sevilla"), Score(0, 1)) == WagerStatus.WON
        assert kind.evaluate(view(kind, "X"), Score(0, 1)) == WagerStatus.LOST

    def test_double_chance(self):
        kind = MarketKind.DOUBLE_CHANCE
        assert kind.evaluate(view(kind, "1X"), Score(1, 1)) == WagerStatus.WON
        assert kind.evaluate(view(kind, "X2"), Score(2, 0)) == WagerStatus.LOST

    def test_draw_no_bet_voids_on_draw(self):
        kind = MarketKind.DRAW_NO_BET
        assert kind.evaluate(view(kind, "1"), Score(1, 1)) == WagerStatus.VOID
        assert kind.evaluate(view(kind, "1"), Score(2, 1)) == WagerStatus.WON

    def test_under_total(self):
        kind = MarketKind.TOTAL_GOALS
        assert kind.evaluate(view(kind, "Under 2.5", "2.5"), Score(1, 1)) == WagerStatus.WON
        assert kind.evaluate(view(kind, "Under 2.25", "2.25"), Score(1, 1)) == WagerStatus.HALF_WON

    def test_team_total(self):
        kind = MarketKind.TEAM_TOTAL_GOALS
        label = "Sevilla Over 1.5"
        assert kind.evaluate(view(kind, label, "1.5"), Score(0, 2)) == WagerStatus.WON
        assert kind.evaluate(view(kind, label, "1.5"), Score(3, 1)) == WagerStatus.LOST

    def test_asian_handicap_quarter(self):
        kind = MarketKind.ASIAN_HANDICAP
        selection = view(kind, "Real Betis (-0.75)", "-0.75")
        assert kind.evaluate(selection, Score(1, 0)) == WagerStatus.HALF_WON
        assert kind.evaluate(selection, Score(2, 0)) == WagerStatus.WON
        assert kind.evaluate(selection, Score(1, 1)) == WagerStatus.LOST

    def test_three_way_handicap_draw(self):
        kind = MarketKind.THREE_WAY_HANDICAP
        assert kind.evaluate(view(kind, "Draw (-1)", "-1"), Score(2, 1)) == WagerStatus.WON

    def test_both_teams_to_score_and_odd_even(self):
        assert MarketKind.BOTH_TEAMS_TO_SCORE.evaluate(
            view(MarketKind.BOTH_TEAMS_TO_SCORE, "Yes"), Score(1, 1)
        ) == WagerStatus.WON
        assert MarketKind.ODD_EVEN.evaluate(
            view(MarketKind.ODD_EVEN, "Odd"), Score(2, 1)
        ) == WagerStatus.WON

    def test_correct_score(self):
        kind = MarketKind.CORRECT_SCORE
        assert kind.evaluate(view(kind, "2-1"), Score(2, 1)) == WagerStatus.WON
        assert kind.evaluate(view(kind, "1:2"), Score(2, 1)) == WagerStatus.LOST

    def test_half_time_markets_need_half_time_score(self):
        kind = MarketKind.HALF_TIME_RESULT
        with pytest.raises(SelectionNotSettleable):
            kind.evaluate(view(kind, "1"), Score(1, 0))
        assert kind.evaluate(view(kind, "X"), Score(1, 0, 0, 0)) == WagerStatus.WON

    def test_second_half_and_ht_ft(self):
        score = Score(2, 1, home_ht=0, away_ht=1)
        assert MarketKind.SECOND_HALF_RESULT.evaluate(
            view(MarketKind.SECOND_HALF_RESULT, "1"), score
        ) == WagerStatus.WON
        assert MarketKind.HALF_TIME_FULL_TIME.evaluate(
            view(MarketKind.HALF_TIME_FULL_TIME, "2/1"), score
        ) == WagerStatus.WON

    def test_exact_winning_margin(self):
        kind = MarketKind.EXACT_WINNING_MARGIN
        assert kind.evaluate(view(kind, "Real Betis by 2"), Score(3, 1)) == WagerStatus.WON
        assert kind.evaluate(view(kind, "Sevilla by 3+"), Score(0, 4)) == WagerStatus.WON
        assert kind.evaluate(view(kind, "Score Draw"), Score(0, 0)) == WagerStatus.LOST

    def test_corners_need_corner_counts(self):
        kind = MarketKind.CORNERS_TOTAL
        with pytest.raises(SelectionNotSettleable):
            kind.evaluate(view(kind, "Over 9.5", "9.5"), Score(1, 0))
        score = Score(1, 0, home_corners=6, away_corners=5)
        assert kind.evaluate(view(kind, "Over 9.5", "9.5"), score) == WagerStatus.WON

    def test_win_to_nil(self):
        kind = MarketKind.WIN_TO_NIL
        assert kind.evaluate(view(kind, "Real Betis"), Score(2, 0)) == WagerStatus.WON
        assert kind.evaluate(view(kind, "Real Betis"), Score(2, 1)) == WagerStatus.LOST

    def test_line_kind_without_line_is_not_settleable(self):
        kind = MarketKind.TOTAL_GOALS
        with pytest.raises(SelectionNotSettleable):
            kind.evaluate(view(kind, "Over"), Score(1, 0))


class TestClassification:
    """Market name to MarketKind."""

    @pytest.mark.parametrize(
        "name,label,expected",
        [
            ("Match Result", "1", MarketKind.MATCH_RESULT),
            ("Double Chance", "1X", MarketKind.DOUBLE_CHANCE),
            ("Total Goals", "Over 2.5", MarketKind.TOTAL_GOALS),
            ("Total Goals by Arsenal", "Over 1.5", MarketKind.TEAM_TOTAL_GOALS),
            ("Total Goals Odd/Even", "Odd", MarketKind.ODD_EVEN),
            ("Asian Handicap", "Home -0.25", MarketKind.ASIAN_HANDICAP),
            ("3-Way Handicap", "Draw (-1)", MarketKind.THREE_WAY_HANDICAP),
            ("Half Time/Full Time", "1/X", MarketKind.HALF_TIME_FULL_TIME),
            ("1st Half Result", "X", MarketKind.HALF_TIME_RESULT),
            ("Winning Margin", "Home by 1", MarketKind.EXACT_WINNING_MARGIN),
            ("Total Corners", "Over 9.5", MarketKind.CORNERS_TOTAL),
        ],
    )
    def test_known_markets(self, name, label, expected):
        assert classify_market(name, label) == expected

    def test_period_market_not_treated_as_full_match(self):
        """'1st Half - Total Goals' must not settle on the full-time total."""
        assert classify_market("1st Half - Total Goals", "Over 0.5") == MarketKind.PROVIDER_SETTLED

    def test_unknown_market_falls_back_to_provider(self):
        assert classify_market("First Goalscorer", "Saka") == MarketKind.PROVIDER_SETTLED


class TestExtractLine:
    def test_reads_signed_line(self):
        assert extract_line(MarketKind.ASIAN_HANDICAP, "Home (-0.75)") == Decimal("-0.75")

    def test_split_line_collapses_to_quarter(self):
        assert extract_line(MarketKind.ASIAN_HANDICAP, "Home 0, -0.5") == Decimal("-0.25")

    def test_last_number_wins(self):
        assert extract_line(MarketKind.TEAM_TOTAL_GOALS, "Schalke 04 Over 1.5") == Decimal("1.5")

    def test_no_line_for_lineless_kind(self):
        assert extract_line(MarketKind.MATCH_RESULT, "Home 1") is None


class TestGroupOdds:
    def test_groups_in_priority_order(self):
        offers = [
            {"market_name": "Total Corners", "selection_label": "Over 9.5", "odds": 1.9},
            {"market_name": "Match Result", "selection_label": "1", "odds": 2.1},
            {"market_name": "Something Exotic", "selection_label": "Yes", "odds": 8.0},
        ]
        groups = group_odds(offers)
        assert [g["id"] for g in groups] == ["full-time", "corners", "others"]
        assert groups[0]["offers"][0]["market_kind"] == MarketKind.MATCH_RESULT.value

    def test_market_id_table_wins(self):
        groups = group_odds([{"market_id": 6, "market_name": "Lines", "selection_label": "Home -1"}])
        assert groups[0]["id"] == "asian-lines"
