"""Fixture matching: local fuzzy scoring and AI-assisted disambiguation."""

from app.services.matching.disambiguator import (
    AIDisambiguator,
    KeyRotator,
    get_disambiguator_breaker,
)
from app.services.matching.similarity import (
    FuzzyMatcher,
    ScoredCandidate,
    normalize_team_name,
    rank_candidates,
    team_similarity,
)

__all__ = [
    "AIDisambiguator",
    "KeyRotator",
    "get_disambiguator_breaker",
    "FuzzyMatcher",
    "ScoredCandidate",
    "normalize_team_name",
    "rank_candidates",
    "team_similarity",
]
