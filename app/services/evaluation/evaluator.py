"""Outcome evaluator.

Pure settlement arithmetic: given a wager's selections and the resolved
results, produce a status and payout. Nothing in this module touches the
database, the cache or the network.

Payout rules (stake S, odds O):
    won        S × O
    half_won   S + (S / 2) × (O − 1)
    half_lost  S / 2
    void       S
    lost       0

Combinations multiply per-leg factors: won → O, void → 1,
half_won → (1 + O) / 2, half_lost → 1/2. Any lost leg loses the whole
wager; any leg still waiting for a result keeps it pending.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from app.models.domain import WagerStatus
from app.services.markets.kinds import SelectionNotSettleable, SelectionView
from app.services.provider.schemas import MatchResult

CENT = Decimal("0.01")
HALF = Decimal("0.5")
ONE = Decimal("1")

HALF_STATUSES = frozenset({WagerStatus.HALF_WON, WagerStatus.HALF_LOST})


def money(value: Decimal) -> Decimal:
    """Round to cents."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class SelectionOutcome:
    """Evaluated status of one selection (a single wager or a leg)."""

    status: WagerStatus
    reason: str
    final_score: str | None = None
    resolved_event_id: str | None = None


@dataclass
class Evaluation:
    """Status and payout for a whole wager."""

    status: WagerStatus
    payout: Decimal
    reason: str
    legs: list[SelectionOutcome] = field(default_factory=list)

    def profit(self, stake: Decimal) -> Decimal:
        return money(self.payout - stake)

    @property
    def is_settled(self) -> bool:
        return self.status not in (WagerStatus.PENDING, WagerStatus.CANCELLED)


def evaluate_selection(
    selection: SelectionView, result: MatchResult | None
) -> SelectionOutcome:
    """
    Settle one selection against its resolved event.

    Provider outcome flags win over our own evaluation from the score. A
    missing or unfinished result leaves the selection pending; a selection
    that cannot be evaluated from the data we have is cancelled so it enters
    the retry budget instead of being guessed.
    """
    if result is None or not result.finished:
        return SelectionOutcome(WagerStatus.PENDING, "awaiting result")

    score_text = str(result.score) if result.score is not None else None
    context = {"final_score": score_text, "resolved_event_id": result.event_id}

    if result.abandoned:
        return SelectionOutcome(WagerStatus.VOID, "event abandoned", **context)

    flag = result.outcome_for(selection.selection_id)
    if flag is not None:
        if flag.void:
            return SelectionOutcome(WagerStatus.VOID, "market void at provider", **context)
        if flag.won is not None:
            status = WagerStatus.WON if flag.won else WagerStatus.LOST
            return SelectionOutcome(status, "provider outcome", **context)

    if result.score is None:
        return SelectionOutcome(WagerStatus.CANCELLED, "finished without a score", **context)

    try:
        status = selection.market_kind.evaluate(selection, result.score)
    except SelectionNotSettleable as e:
        return SelectionOutcome(WagerStatus.CANCELLED, str(e), **context)
    return SelectionOutcome(status, f"{selection.market_kind.value} at {score_text}", **context)


def single_payout(stake: Decimal, odds: Decimal, status: WagerStatus) -> Decimal:
    """Payout of a single selection for a given status."""
    if status == WagerStatus.WON:
        return money(stake * odds)
    if status == WagerStatus.HALF_WON:
        return money(stake + (stake / 2) * (odds - ONE))
    if status == WagerStatus.HALF_LOST:
        return money(stake / 2)
    if status == WagerStatus.VOID:
        return money(stake)
    return Decimal("0.00")


def leg_factor(status: WagerStatus, odds: Decimal) -> Decimal:
    """Multiplier a settled leg contributes to a combination."""
    if status == WagerStatus.WON:
        return Decimal(odds)
    if status == WagerStatus.HALF_WON:
        return (ONE + Decimal(odds)) / 2
    if status == WagerStatus.HALF_LOST:
        return HALF
    if status == WagerStatus.VOID:
        return ONE
    raise ValueError(f"Leg status {status.value} has no payout factor")


def evaluate_single(
    stake: Decimal, selection: SelectionView, result: MatchResult | None
) -> Evaluation:
    outcome = evaluate_selection(selection, result)
    return Evaluation(
        status=outcome.status,
        payout=single_payout(stake, selection.odds, outcome.status),
        reason=outcome.reason,
        legs=[outcome],
    )


def aggregate_legs(
    stake: Decimal,
    legs: Sequence[tuple[SelectionView, SelectionOutcome]],
) -> Evaluation:
    """Combine already evaluated legs into the combination's status and payout."""
    outcomes = [outcome for _, outcome in legs]
    statuses = [outcome.status for outcome in outcomes]

    if WagerStatus.LOST in statuses:
        lost_at = statuses.index(WagerStatus.LOST)
        return Evaluation(
            WagerStatus.LOST, Decimal("0.00"), f"leg {lost_at + 1} lost", outcomes
        )
    if WagerStatus.PENDING in statuses:
        waiting = statuses.count(WagerStatus.PENDING)
        return Evaluation(
            WagerStatus.PENDING, Decimal("0.00"), f"{waiting} leg(s) awaiting result", outcomes
        )
    if WagerStatus.CANCELLED in statuses:
        reasons = "; ".join(o.reason for o in outcomes if o.status == WagerStatus.CANCELLED)
        return Evaluation(WagerStatus.CANCELLED, Decimal("0.00"), reasons, outcomes)

    multiplier = ONE
    for selection, outcome in legs:
        multiplier *= leg_factor(outcome.status, selection.odds)
    payout = money(stake * multiplier)

    if all(status == WagerStatus.VOID for status in statuses):
        status, reason = WagerStatus.VOID, "all legs void"
    elif any(status in HALF_STATUSES for status in statuses):
        # A factor of exactly 1 returns the stake, which is a void
        if payout > stake:
            status = WagerStatus.HALF_WON
        elif payout == money(stake):
            status = WagerStatus.VOID
        else:
            status = WagerStatus.HALF_LOST
        reason = f"half-settled legs, combined factor {multiplier.normalize()}"
    else:
        status = WagerStatus.WON
        voided = statuses.count(WagerStatus.VOID)
        reason = "all legs won" if not voided else f"won with {voided} void leg(s)"
    return Evaluation(status, payout, reason, outcomes)


def evaluate_combination(
    stake: Decimal,
    legs: Sequence[tuple[SelectionView, MatchResult | None]],
) -> Evaluation:
    """Evaluate every leg independently, then aggregate."""
    evaluated = [(selection, evaluate_selection(selection, result)) for selection, result in legs]
    return aggregate_legs(stake, evaluated)
