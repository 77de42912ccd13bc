"""Outcome evaluation for single and combination wagers."""

from app.services.evaluation.evaluator import (
    Evaluation,
    SelectionOutcome,
    aggregate_legs,
    evaluate_combination,
    evaluate_selection,
    evaluate_single,
    leg_factor,
    money,
    single_payout,
)

__all__ = [
    "Evaluation",
    "SelectionOutcome",
    "evaluate_selection",
    "evaluate_single",
    "evaluate_combination",
    "aggregate_legs",
    "single_payout",
    "leg_factor",
    "money",
]
