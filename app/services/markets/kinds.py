"""Market kinds and their outcome rules.

Each MarketKind carries its own evaluation function. The kind is chosen
once at placement (see ``classification.classify_market``) and stored on
the wager, so settlement never re-parses market names.

All scores are regular-time scores. Handicap and total lines ending in .25
or .75 are split into two half-stakes on the neighbouring lines, which is
where the half_won and half_lost outcomes come from.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from app.models.domain import WagerStatus


class SelectionNotSettleable(ValueError):
    """The selection cannot be evaluated from the available result data."""


@dataclass(frozen=True)
class Score:
    """Final regular-time score plus the optional detail some markets need."""

    home: int
    away: int
    home_ht: int | None = None
    away_ht: int | None = None
    home_corners: int | None = None
    away_corners: int | None = None

    @property
    def total(self) -> int:
        return self.home + self.away

    @property
    def has_half_time(self) -> bool:
        return self.home_ht is not None and self.away_ht is not None

    def __str__(self) -> str:
        return f"{self.home}-{self.away}"


@dataclass(frozen=True)
class SelectionView:
    """What the evaluator needs to know about one selection."""

    market_kind: "MarketKind"
    selection_id: str
    selection_label: str
    odds: Decimal
    line: Decimal | None = None
    home_name: str | None = None
    away_name: str | None = None


HOME, DRAW, AWAY = "home", "draw", "away"

_HOME_TOKENS = {"1", "home", "w1"}
_DRAW_TOKENS = {"x", "draw", "tie"}
_AWAY_TOKENS = {"2", "away", "w2"}


def _clean(text: str | None) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def resolve_side(token: str, selection: SelectionView, allow_draw: bool = True) -> str:
    """Map a selection label (or part of one) to home/draw/away."""
    value = _clean(token)
    if value in _HOME_TOKENS:
        return HOME
    if value in _AWAY_TOKENS:
        return AWAY
    if allow_draw and value in _DRAW_TOKENS:
        return DRAW

    home = _clean(selection.home_name)
    away = _clean(selection.away_name)
    if home and (value == home or home in value):
        return HOME
    if away and (value == away or away in value):
        return AWAY
    raise SelectionNotSettleable(f"Cannot identify side from '{token}'")


def result_side(home: int, away: int) -> str:
    if home > away:
        return HOME
    if away > home:
        return AWAY
    return DRAW


def _win_or_lose(condition: bool) -> WagerStatus:
    return WagerStatus.WON if condition else WagerStatus.LOST


def _line_part(margin: Decimal) -> WagerStatus:
    if margin > 0:
        return WagerStatus.WON
    if margin < 0:
        return WagerStatus.LOST
    return WagerStatus.VOID


def settle_line(value: Decimal, line: Decimal) -> WagerStatus:
    """
    Settle ``value`` against ``line`` where a positive difference wins.

    Whole lines push (void) on an exact hit. Quarter lines are settled as
    two halves on ``line - 0.25`` and ``line + 0.25``.
    """
    fraction = abs(line) % 1
    if fraction not in (Decimal("0.25"), Decimal("0.75")):
        return _line_part(value - line)

    lower = _line_part(value - (line - Decimal("0.25")))
    upper = _line_part(value - (line + Decimal("0.25")))
    parts = {lower, upper}
    if parts == {WagerStatus.WON}:
        return WagerStatus.WON
    if parts == {WagerStatus.LOST}:
        return WagerStatus.LOST
    if parts == {WagerStatus.WON, WagerStatus.VOID}:
        return WagerStatus.HALF_WON
    if parts == {WagerStatus.LOST, WagerStatus.VOID}:
        return WagerStatus.HALF_LOST
    # A quarter line cannot straddle a win and a loss
    return WagerStatus.VOID


def _require_line(selection: SelectionView) -> Decimal:
    if selection.line is None:
        raise SelectionNotSettleable(
            f"{selection.market_kind.value} selection has no line"
        )
    return Decimal(selection.line)


def _over_under(label: str) -> str:
    value = _clean(label)
    if value.startswith("over") or " over" in value:
        return "over"
    if value.startswith("under") or " under" in value:
        return "under"
    raise SelectionNotSettleable(f"Expected Over/Under in '{label}'")


def _totals(label: str, line: Decimal, total: int) -> WagerStatus:
    if _over_under(label) == "over":
        return settle_line(Decimal(total), line)
    return settle_line(-Decimal(total), -line)


def _strip_line(label: str) -> str:
    """Drop the handicap figure and brackets from labels like "Home (-1.5)"."""
    return re.sub(r"[()\[\]]|[+-]?\d+(\.\d+)?", "", label)


def _require_half_time(score: Score) -> tuple[int, int]:
    if not score.has_half_time:
        raise SelectionNotSettleable("Half-time score not available")
    return score.home_ht, score.away_ht


# ---------------------------------------------------------------------------
# Per-kind evaluation functions
# ---------------------------------------------------------------------------


def _eval_match_result(selection: SelectionView, score: Score) -> WagerStatus:
    picked = resolve_side(selection.selection_label, selection)
    return _win_or_lose(picked == result_side(score.home, score.away))


def _eval_double_chance(selection: SelectionView, score: Score) -> WagerStatus:
    label = _clean(selection.selection_label).replace(" or ", "/").replace(" ", "")
    if "/" in label:
        parts = label.split("/")
    elif len(label) == 2:
        parts = list(label)
    else:
        raise SelectionNotSettleable(f"Unrecognised double chance '{selection.selection_label}'")
    covered = {resolve_side(part, selection) for part in parts}
    if len(covered) != 2:
        raise SelectionNotSettleable(f"Double chance must cover two outcomes: '{label}'")
    return _win_or_lose(result_side(score.home, score.away) in covered)


def _eval_draw_no_bet(selection: SelectionView, score: Score) -> WagerStatus:
    picked = resolve_side(selection.selection_label, selection, allow_draw=False)
    outcome = result_side(score.home, score.away)
    if outcome == DRAW:
        return WagerStatus.VOID
    return _win_or_lose(picked == outcome)


def _eval_total_goals(selection: SelectionView, score: Score) -> WagerStatus:
    return _totals(selection.selection_label, _require_line(selection), score.total)


def _eval_team_total_goals(selection: SelectionView, score: Score) -> WagerStatus:
    label = _clean(selection.selection_label)
    team_part = re.split(r"\b(over|under)\b", label)[0].strip()
    side = resolve_side(team_part, selection, allow_draw=False)
    goals = score.home if side == HOME else score.away
    return _totals(label, _require_line(selection), goals)


def _eval_asian_handicap(selection: SelectionView, score: Score) -> WagerStatus:
    """``line`` is the handicap of the selected side, e.g. -0.75."""
    side = resolve_side(_strip_line(selection.selection_label), selection, allow_draw=False)
    line = _require_line(selection)
    ours, theirs = (score.home, score.away) if side == HOME else (score.away, score.home)
    return settle_line(Decimal(ours - theirs), -line)


def _eval_three_way_handicap(selection: SelectionView, score: Score) -> WagerStatus:
    """``line`` is the handicap applied to the home side; draw is a result."""
    picked = resolve_side(_strip_line(selection.selection_label), selection)
    adjusted_home = Decimal(score.home) + _require_line(selection)
    away = Decimal(score.away)
    if adjusted_home > away:
        outcome = HOME
    elif adjusted_home < away:
        outcome = AWAY
    else:
        outcome = DRAW
    return _win_or_lose(picked == outcome)


def _eval_both_teams_to_score(selection: SelectionView, score: Score) -> WagerStatus:
    both = score.home > 0 and score.away > 0
    label = _clean(selection.selection_label)
    if label in ("yes", "y"):
        return _win_or_lose(both)
    if label in ("no", "n"):
        return _win_or_lose(not both)
    raise SelectionNotSettleable(f"Expected Yes/No, got '{selection.selection_label}'")


def _eval_odd_even(selection: SelectionView, score: Score) -> WagerStatus:
    label = _clean(selection.selection_label)
    if label not in ("odd", "even"):
        raise SelectionNotSettleable(f"Expected Odd/Even, got '{selection.selection_label}'")
    return _win_or_lose((score.total % 2 == 1) == (label == "odd"))


def _eval_correct_score(selection: SelectionView, score: Score) -> WagerStatus:
    match = re.fullmatch(r"\s*(\d+)\s*[-:]\s*(\d+)\s*", selection.selection_label)
    if not match:
        raise SelectionNotSettleable(f"Unrecognised score '{selection.selection_label}'")
    return _win_or_lose(
        (int(match.group(1)), int(match.group(2))) == (score.home, score.away)
    )


def _eval_half_time_result(selection: SelectionView, score: Score) -> WagerStatus:
    home_ht, away_ht = _require_half_time(score)
    picked = resolve_side(selection.selection_label, selection)
    return _win_or_lose(picked == result_side(home_ht, away_ht))


def _eval_second_half_result(selection: SelectionView, score: Score) -> WagerStatus:
    home_ht, away_ht = _require_half_time(score)
    picked = resolve_side(selection.selection_label, selection)
    return _win_or_lose(picked == result_side(score.home - home_ht, score.away - away_ht))


def _eval_half_time_full_time(selection: SelectionView, score: Score) -> WagerStatus:
    home_ht, away_ht = _require_half_time(score)
    parts = [p for p in re.split(r"[/\-]", selection.selection_label) if p.strip()]
    if len(parts) != 2:
        raise SelectionNotSettleable(f"Expected HT/FT pair, got '{selection.selection_label}'")
    ht_pick = resolve_side(parts[0], selection)
    ft_pick = resolve_side(parts[1], selection)
    return _win_or_lose(
        ht_pick == result_side(home_ht, away_ht)
        and ft_pick == result_side(score.home, score.away)
    )


def _eval_exact_winning_margin(selection: SelectionView, score: Score) -> WagerStatus:
    label = _clean(selection.selection_label)
    margin = score.home - score.away
    if label == "no goal draw":
        return _win_or_lose(score.total == 0)
    if label == "score draw":
        return _win_or_lose(margin == 0 and score.total > 0)
    if label in _DRAW_TOKENS:
        return _win_or_lose(margin == 0)

    pattern = r"(?:\bby\s*)?(\d+)\s*(\+|or more)?(?:\s*goals?)?\s*$"
    match = re.search(pattern, label)
    if not match:
        raise SelectionNotSettleable(f"Unrecognised winning margin '{selection.selection_label}'")
    side = resolve_side(re.sub(pattern, "", label).strip(), selection, allow_draw=False)
    wanted = int(match.group(1))
    actual = margin if side == HOME else -margin
    if match.group(2):
        return _win_or_lose(actual >= wanted)
    return _win_or_lose(actual == wanted)


def _eval_corners_total(selection: SelectionView, score: Score) -> WagerStatus:
    if score.home_corners is None or score.away_corners is None:
        raise SelectionNotSettleable("Corner counts not available")
    return _totals(
        selection.selection_label,
        _require_line(selection),
        score.home_corners + score.away_corners,
    )


def _eval_win_to_nil(selection: SelectionView, score: Score) -> WagerStatus:
    side = resolve_side(selection.selection_label, selection, allow_draw=False)
    if side == HOME:
        return _win_or_lose(score.home > 0 and score.away == 0)
    return _win_or_lose(score.away > 0 and score.home == 0)


def _eval_provider_only(selection: SelectionView, score: Score) -> WagerStatus:
    raise SelectionNotSettleable(
        "Market can only be settled from provider outcome flags"
    )


class MarketKind(str, Enum):
    """Closed set of settleable market kinds."""

    MATCH_RESULT = "match_result"
    DOUBLE_CHANCE = "double_chance"
    DRAW_NO_BET = "draw_no_bet"
    TOTAL_GOALS = "total_goals"
    TEAM_TOTAL_GOALS = "team_total_goals"
    ASIAN_HANDICAP = "asian_handicap"
    THREE_WAY_HANDICAP = "three_way_handicap"
    BOTH_TEAMS_TO_SCORE = "both_teams_to_score"
    ODD_EVEN = "odd_even"
    CORRECT_SCORE = "correct_score"
    HALF_TIME_RESULT = "half_time_result"
    SECOND_HALF_RESULT = "second_half_result"
    HALF_TIME_FULL_TIME = "half_time_full_time"
    EXACT_WINNING_MARGIN = "exact_winning_margin"
    CORNERS_TOTAL = "corners_total"
    WIN_TO_NIL = "win_to_nil"
    PROVIDER_SETTLED = "provider_settled"

    @property
    def has_line(self) -> bool:
        return self in _LINE_KINDS

    def evaluate(self, selection: SelectionView, score: Score) -> WagerStatus:
        """Settle ``selection`` against ``score`` using this kind's rule."""
        return _EVALUATORS[self](selection, score)


_LINE_KINDS = frozenset(
    {
        MarketKind.TOTAL_GOALS,
        MarketKind.TEAM_TOTAL_GOALS,
        MarketKind.ASIAN_HANDICAP,
        MarketKind.THREE_WAY_HANDICAP,
        MarketKind.CORNERS_TOTAL,
    }
)

_EVALUATORS: dict[MarketKind, Callable[[SelectionView, Score], WagerStatus]] = {
    MarketKind.MATCH_RESULT: _eval_match_result,
    MarketKind.DOUBLE_CHANCE: _eval_double_chance,
    MarketKind.DRAW_NO_BET: _eval_draw_no_bet,
    MarketKind.TOTAL_GOALS: _eval_total_goals,
    MarketKind.TEAM_TOTAL_GOALS: _eval_team_total_goals,
    MarketKind.ASIAN_HANDICAP: _eval_asian_handicap,
    MarketKind.THREE_WAY_HANDICAP: _eval_three_way_handicap,
    MarketKind.BOTH_TEAMS_TO_SCORE: _eval_both_teams_to_score,
    MarketKind.ODD_EVEN: _eval_odd_even,
    MarketKind.CORRECT_SCORE: _eval_correct_score,
    MarketKind.HALF_TIME_RESULT: _eval_half_time_result,
    MarketKind.SECOND_HALF_RESULT: _eval_second_half_result,
    MarketKind.HALF_TIME_FULL_TIME: _eval_half_time_full_time,
    MarketKind.EXACT_WINNING_MARGIN: _eval_exact_winning_margin,
    MarketKind.CORNERS_TOTAL: _eval_corners_total,
    MarketKind.WIN_TO_NIL: _eval_win_to_nil,
    MarketKind.PROVIDER_SETTLED: _eval_provider_only,
}
