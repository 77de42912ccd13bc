"""Match result provider client module."""

from app.services.provider.client import MatchProviderClient
from app.services.provider.rate_limiter import RequestRateLimiter
from app.services.provider.schemas import (
    EventCandidate,
    MarketOutcome,
    MatchResult,
    ProviderEvent,
)

__all__ = [
    "MatchProviderClient",
    "RequestRateLimiter",
    "EventCandidate",
    "MarketOutcome",
    "MatchResult",
    "ProviderEvent",
]
