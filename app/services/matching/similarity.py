"""Local fuzzy matching of fixtures by team names and kick-off time.

Team names are normalised first (club affixes and punctuation removed) so
"Manchester United FC" and "Man United" compare on their distinctive part.
A candidate's confidence is the mean of its home and away similarity;
candidates outside the time window are never considered.
"""

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from rapidfuzz import fuzz

from app.services.provider.schemas import EventCandidate

logger = structlog.get_logger(__name__)

CLUB_AFFIXES = (
    "fc", "cf", "ac", "sc", "afc", "ssc", "cd", "sd", "ud", "fk", "sk", "bk",
    "united", "utd", "city", "town", "rovers", "wanderers", "athletic",
    "albion", "club", "de", "the",
)

_AFFIX_PATTERN = re.compile(r"\b(" + "|".join(CLUB_AFFIXES) + r")\b")


def normalize_team_name(name: str | None) -> str:
    """
    Normalise a team name for comparison.

    Strips accents, punctuation and common club affixes. If stripping would
    leave nothing ("FC United"), the punctuation-free name is kept instead.
    """
    if not name:
        return ""
    text = unicodedata.normalize("NFKD", name)
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    stripped = re.sub(r"\s+", " ", _AFFIX_PATTERN.sub(" ", text)).strip()
    return stripped or text


def team_similarity(a: str | None, b: str | None) -> float:
    """
    Similarity of two team names in [0, 1].

    Equal normalised names score 1.0, containment ("inter" in "inter milan")
    scores at least 0.8, everything else uses rapidfuzz's weighted ratio.
    """
    norm_a = normalize_team_name(a)
    norm_b = normalize_team_name(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    score = fuzz.WRatio(norm_a, norm_b) / 100.0
    if norm_a in norm_b or norm_b in norm_a:
        score = max(score, 0.8)
    return round(score, 4)


@dataclass
class ScoredCandidate:
    candidate: EventCandidate
    confidence: float
    home_similarity: float
    away_similarity: float


def within_window(
    candidate: EventCandidate, expected_start: datetime | None, window: timedelta
) -> bool:
    if expected_start is None:
        return True
    return abs(candidate.start_time - expected_start) <= window


def rank_candidates(
    expected_home: str,
    expected_away: str,
    expected_start: datetime | None,
    candidates: list[EventCandidate],
    window: timedelta = timedelta(hours=24),
) -> list[ScoredCandidate]:
    """Score every candidate inside the window, best first."""
    scored = []
    for candidate in candidates:
        if not within_window(candidate, expected_start, window):
            continue
        home_sim = team_similarity(expected_home, candidate.home_name)
        away_sim = team_similarity(expected_away, candidate.away_name)
        scored.append(
            ScoredCandidate(
                candidate=candidate,
                confidence=round((home_sim + away_sim) / 2, 4),
                home_similarity=home_sim,
                away_similarity=away_sim,
            )
        )
    scored.sort(key=lambda s: s.confidence, reverse=True)
    return scored


class FuzzyMatcher:
    """
    Pick the best candidate fixture by team-name similarity.

    A best candidate below ``min_confidence`` is no match at all: settling
    against the wrong fixture is worse than waiting for the next sweep.
    """

    def __init__(self, min_confidence: float = 0.6, window: timedelta = timedelta(hours=24)):
        self.min_confidence = min_confidence
        self.window = window

    def best_match(
        self,
        expected_home: str,
        expected_away: str,
        expected_start: datetime | None,
        candidates: list[EventCandidate],
    ) -> ScoredCandidate | None:
        ranked = rank_candidates(
            expected_home, expected_away, expected_start, candidates, self.window
        )
        if not ranked:
            return None

        best = ranked[0]
        if best.confidence < self.min_confidence:
            logger.info(
                "fuzzy_match_below_threshold",
                home=expected_home,
                away=expected_away,
                best_event_id=best.candidate.event_id,
                confidence=best.confidence,
                threshold=self.min_confidence,
            )
            return None

        # Two different fixtures scoring the same is not a confident pick
        if len(ranked) > 1 and ranked[1].confidence == best.confidence:
            logger.info(
                "fuzzy_match_tied",
                home=expected_home,
                away=expected_away,
                event_ids=[best.candidate.event_id, ranked[1].candidate.event_id],
            )
            return None
        return best
