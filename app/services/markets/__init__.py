"""Market kinds, classification and display grouping."""

from app.services.markets.classification import (
    classify_market,
    extract_line,
    group_odds,
)
from app.services.markets.kinds import (
    MarketKind,
    Score,
    SelectionNotSettleable,
    SelectionView,
    settle_line,
)

__all__ = [
    "MarketKind",
    "Score",
    "SelectionView",
    "SelectionNotSettleable",
    "settle_line",
    "classify_market",
    "extract_line",
    "group_odds",
]
