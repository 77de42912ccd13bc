"""Data classes exchanged with the match result provider.

These are plain dataclasses so the evaluator can consume them without any
I/O dependency. ``to_cache``/``from_cache`` give the JSON shape stored in the
fixture cache.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.services.markets.kinds import Score


def _parse_time(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class EventCandidate:
    """A fixture listed by the provider for a date window."""

    event_id: str
    home_name: str
    away_name: str
    start_time: datetime
    league: str | None = None
    offers: list[dict[str, Any]] = field(default_factory=list)

    def to_cache(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "home_name": self.home_name,
            "away_name": self.away_name,
            "start_time": self.start_time.isoformat(),
            "league": self.league,
            "offers": self.offers,
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> "EventCandidate":
        return cls(
            event_id=str(data["event_id"]),
            home_name=data["home_name"],
            away_name=data["away_name"],
            start_time=_parse_time(data["start_time"]),
            league=data.get("league"),
            offers=list(data.get("offers") or []),
        )


@dataclass
class MarketOutcome:
    """Provider-settled flag for one selection."""

    selection_id: str
    won: bool | None = None
    void: bool = False


@dataclass
class ProviderEvent:
    """Authoritative state of one event."""

    event_id: str
    home_name: str
    away_name: str
    start_time: datetime | None
    status: str
    finished: bool
    abandoned: bool = False
    score: Score | None = None
    market_outcomes: list[MarketOutcome] = field(default_factory=list)

    def outcome_for(self, selection_id: str | None) -> MarketOutcome | None:
        if selection_id is None:
            return None
        for outcome in self.market_outcomes:
            if outcome.selection_id == str(selection_id):
                return outcome
        return None

    def to_cache(self) -> dict[str, Any]:
        score = None
        if self.score is not None:
            score = {
                "home": self.score.home,
                "away": self.score.away,
                "home_ht": self.score.home_ht,
                "away_ht": self.score.away_ht,
                "home_corners": self.score.home_corners,
                "away_corners": self.score.away_corners,
            }
        return {
            "event_id": self.event_id,
            "home_name": self.home_name,
            "away_name": self.away_name,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "status": self.status,
            "finished": self.finished,
            "abandoned": self.abandoned,
            "score": score,
            "market_outcomes": [
                {"selection_id": o.selection_id, "won": o.won, "void": o.void}
                for o in self.market_outcomes
            ],
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> "ProviderEvent":
        score = data.get("score")
        return cls(
            event_id=str(data["event_id"]),
            home_name=data.get("home_name", ""),
            away_name=data.get("away_name", ""),
            start_time=_parse_time(data.get("start_time")),
            status=data.get("status", "unknown"),
            finished=bool(data.get("finished")),
            abandoned=bool(data.get("abandoned")),
            score=Score(**score) if score else None,
            market_outcomes=[
                MarketOutcome(
                    selection_id=str(o["selection_id"]),
                    won=o.get("won"),
                    void=bool(o.get("void")),
                )
                for o in data.get("market_outcomes") or []
            ],
        )


@dataclass
class MatchResult:
    """
    Resolver output: a finished event plus how it was matched.

    ``method`` is 'id' for an exact id lookup, 'fuzzy' or 'ai' when the
    fixture was found through disambiguation.
    """

    event: ProviderEvent
    method: str = "id"
    confidence: float = 1.0

    @property
    def event_id(self) -> str:
        return self.event.event_id

    @property
    def finished(self) -> bool:
        return self.event.finished

    @property
    def abandoned(self) -> bool:
        return self.event.abandoned

    @property
    def score(self) -> Score | None:
        return self.event.score

    def outcome_for(self, selection_id: str | None) -> MarketOutcome | None:
        return self.event.outcome_for(selection_id)
