"""Market classification.

Two jobs live here:

1. ``classify_market`` maps a provider market name (plus the selection
   label where it disambiguates) to a MarketKind at placement time. Rules
   are checked in priority order so specific markets ("Total Goals by
   Arsenal", "Asian Handicap") are not swallowed by generic ones ("Total
   Goals", "Handicap").
2. ``group_odds`` buckets a fixture's odds offers into display categories
   for the cached fixture payloads.
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from app.services.markets.kinds import MarketKind


@dataclass(frozen=True)
class MarketRule:
    """One classification rule."""
    kind: MarketKind
    priority: int
    matches: Callable[[str, str], bool]


def _has(*needles: str) -> Callable[[str, str], bool]:
    return lambda name, label: any(n in name for n in needles)


def _is_half_time_full_time(name: str, label: str) -> bool:
    named = "half time/full time" in name or "half time full time" in name or "ht/ft" in name
    return named and bool(re.fullmatch(r"[12x]\s*/\s*[12x]", label) or "/" in label)


def _is_team_total(name: str, label: str) -> bool:
    return "total goals by" in name or "team total goals" in name or "team goals" in name


def _is_half_time_result(name: str, label: str) -> bool:
    first_half = "1st half" in name or "first half" in name or "half time result" in name
    return first_half and "total" not in name and "handicap" not in name


def _is_second_half_result(name: str, label: str) -> bool:
    second_half = "2nd half" in name or "second half" in name
    return second_half and "total" not in name and "handicap" not in name


def _is_match_result(name: str, label: str) -> bool:
    return name in (
        "match result",
        "match (regular time)",
        "full time result",
        "1x2",
        "match odds",
        "match winner",
        "fulltime result",
    )


def _is_three_way_handicap(name: str, label: str) -> bool:
    return "3-way handicap" in name or "3 way handicap" in name or "three way handicap" in name


def _is_asian_handicap(name: str, label: str) -> bool:
    return "asian handicap" in name or name == "handicap" or "asian line" in name


MARKET_RULES: list[MarketRule] = sorted(
    [
        MarketRule(MarketKind.HALF_TIME_FULL_TIME, 90, _is_half_time_full_time),
        MarketRule(MarketKind.EXACT_WINNING_MARGIN, 88, _has("winning margin")),
        MarketRule(MarketKind.CORRECT_SCORE, 86, _has("correct score", "exact score")),
        MarketRule(MarketKind.MATCH_RESULT, 85, _is_match_result),
        MarketRule(MarketKind.TEAM_TOTAL_GOALS, 80, _is_team_total),
        MarketRule(MarketKind.ODD_EVEN, 78, _has("odd/even", "odd or even", "total goals odd")),
        MarketRule(MarketKind.CORNERS_TOTAL, 75, _has("total corners", "corners over/under")),
        MarketRule(MarketKind.TOTAL_GOALS, 70, _has("total goals", "goals over/under", "over/under")),
        MarketRule(MarketKind.THREE_WAY_HANDICAP, 65, _is_three_way_handicap),
        MarketRule(MarketKind.ASIAN_HANDICAP, 60, _is_asian_handicap),
        MarketRule(MarketKind.DOUBLE_CHANCE, 55, _has("double chance")),
        MarketRule(MarketKind.DRAW_NO_BET, 55, _has("draw no bet")),
        MarketRule(MarketKind.BOTH_TEAMS_TO_SCORE, 50, _has("both teams to score", "btts")),
        MarketRule(MarketKind.WIN_TO_NIL, 45, _has("to win to nil", "win to nil")),
        MarketRule(MarketKind.HALF_TIME_RESULT, 35, _is_half_time_result),
        MarketRule(MarketKind.SECOND_HALF_RESULT, 35, _is_second_half_result),
    ],
    key=lambda rule: rule.priority,
    reverse=True,
)


def _normalise(text: str | None) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


HALF_KINDS = frozenset(
    {
        MarketKind.HALF_TIME_RESULT,
        MarketKind.SECOND_HALF_RESULT,
        MarketKind.HALF_TIME_FULL_TIME,
    }
)

_PERIOD_PATTERN = re.compile(r"1st half|2nd half|first half|second half|half time|\d+-\d+ min")


def classify_market(market_name: str, selection_label: str = "") -> MarketKind:
    """
    Pick the MarketKind for a market.

    Period markets ("1st Half - Total Goals") only match the half-time
    kinds; full-match rules never see them. Markets that match no rule
    become PROVIDER_SETTLED: they can still be settled, but only from the
    provider's per-selection outcome flags.
    """
    name = _normalise(market_name)
    label = _normalise(selection_label)
    period_market = bool(_PERIOD_PATTERN.search(name))
    for rule in MARKET_RULES:
        if period_market and rule.kind not in HALF_KINDS:
            continue
        if rule.matches(name, label):
            return rule.kind
    return MarketKind.PROVIDER_SETTLED


_LINE_PATTERN = re.compile(r"(?<![\d.])([+-]?\d+(?:\.\d+)?)(?:\s*,\s*([+-]?\d+(?:\.\d+)?))?")


def extract_line(kind: MarketKind, selection_label: str) -> Decimal | None:
    """
    Read the handicap or total line from a selection label.

    Split lines written as "0, -0.5" collapse to their quarter line
    (-0.25). Returns None for kinds without a line or when no number is
    present.
    """
    if not kind.has_line:
        return None
    matches = list(_LINE_PATTERN.finditer(selection_label or ""))
    if not matches:
        return None
    # Last number wins so team names like "Schalke 04" are skipped
    match = matches[-1]
    try:
        first = Decimal(match.group(1))
        if match.group(2) is not None:
            return (first + Decimal(match.group(2))) / 2
        return first
    except InvalidOperation:
        return None


# ---------------------------------------------------------------------------
# Display grouping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OddsCategory:
    """Display bucket for odds offers."""
    id: str
    label: str
    priority: int
    keywords: tuple[str, ...] = ()
    market_ids: frozenset[int] = field(default_factory=frozenset)


ODDS_CATEGORIES: tuple[OddsCategory, ...] = (
    OddsCategory("full-time", "Full Time", 1,
                 ("full time", "match result", "match odds", "1x2", "winner", "moneyline", "final result"),
                 frozenset({1, 52, 13, 14, 80})),
    OddsCategory("goal-scorer", "Goal Scorer", 2,
                 ("goal scorer", "first goal", "last goal", "anytime scorer", "scorer"),
                 frozenset({247, 11})),
    OddsCategory("player-cards", "Player Cards", 3,
                 ("to get a card", "yellow card", "red card", "booking")),
    OddsCategory("half-time", "Half Time", 4,
                 ("1st half", "2nd half", "half time", "halftime", "first half", "second half"),
                 frozenset({31, 97, 49, 28, 15, 16})),
    OddsCategory("corners", "Corners", 5, ("corner",)),
    OddsCategory("three-way-handicap", "3 Way Handicap", 6,
                 ("3 way handicap", "3-way handicap", "three way handicap")),
    OddsCategory("asian-lines", "Asian Lines", 7,
                 ("asian", "asian handicap", "asian lines"), frozenset({6, 26})),
    OddsCategory("goals", "Goals", 8,
                 ("total goals", "over/under", "both teams to score", "exact goals"),
                 frozenset({18, 19})),
    OddsCategory("specials", "Specials", 9,
                 ("odd", "even", "win to nil", "both halves", "special", "winning margin"),
                 frozenset({44, 45, 124, 46, 40, 101, 266})),
)

OTHERS = OddsCategory("others", "Others", 99)


def categorise_offer(offer: dict[str, Any]) -> OddsCategory:
    """Pick the display category of a single odds offer."""
    market_id = offer.get("market_id")
    try:
        market_id = int(market_id) if market_id is not None else None
    except (TypeError, ValueError):
        market_id = None

    name = _normalise(offer.get("market_name"))
    for category in ODDS_CATEGORIES:
        if market_id is not None and market_id in category.market_ids:
            return category
        if any(keyword in name for keyword in category.keywords):
            return category
    return OTHERS


def group_odds(offers: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Group odds offers into ordered display categories.

    Empty categories are left out. Each offer is tagged with the MarketKind
    it would settle under so consumers can tell settleable markets apart.
    """
    buckets: dict[str, list[dict[str, Any]]] = {}
    categories: dict[str, OddsCategory] = {}
    for offer in offers:
        category = categorise_offer(offer)
        categories[category.id] = category
        tagged = dict(offer)
        tagged["market_kind"] = classify_market(
            offer.get("market_name", ""), offer.get("selection_label", "")
        ).value
        buckets.setdefault(category.id, []).append(tagged)

    ordered = sorted(categories.values(), key=lambda c: c.priority)
    return [
        {"id": c.id, "label": c.label, "offers": buckets[c.id]}
        for c in ordered
    ]
