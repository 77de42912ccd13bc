"""Match result resolver.

Pipeline for one selection:

1. Exact lookup by event id: fixture cache, then the provider.
2. If the provider does not know the id: candidate fixtures around the
   expected kick-off (cached per day window), local fuzzy matching, then
   the optional AI disambiguator. An exact id hit always wins; fuzzy
   disambiguation only runs when the id is unknown.
3. Found but not finished: NotFinishedError, the caller reschedules.
4. Found and finished: a MatchResult with the final score and any
   per-selection outcome flags.

Results are memoized per event id: finished results for a day, live
states for a minute, and remapped ids (wager event id → provider event id)
for a day so disambiguation runs once per fixture.
"""

from datetime import datetime, timedelta

import structlog

from app.config import get_settlement_config
from app.config.settlement import MatchingConfig
from app.errors import AmbiguousMatchError, EventNotFoundError, MatcherUnavailableError, NotFinishedError
from app.models.base import as_utc
from app.services.cache import CacheTier, FixtureCache, event_key, fixture_filter_key
from app.services.matching.disambiguator import AIDisambiguator
from app.services.matching.similarity import FuzzyMatcher, within_window
from app.services.provider.client import MatchProviderClient
from app.services.provider.schemas import EventCandidate, MatchResult, ProviderEvent

logger = structlog.get_logger(__name__)


def _alias_key(event_id: str) -> str:
    return f"alias:{event_id}"


class MatchResultResolver:
    """Resolve wager selections to finished provider events."""

    def __init__(
        self,
        provider: MatchProviderClient,
        cache: FixtureCache | None = None,
        disambiguator: AIDisambiguator | None = None,
        config: MatchingConfig | None = None,
    ):
        self.provider = provider
        self.cache = cache
        self.disambiguator = disambiguator
        self.config = config or get_settlement_config().matching
        self.window = timedelta(hours=self.config.candidate_window_hours)
        self.fuzzy = FuzzyMatcher(min_confidence=self.config.min_confidence, window=self.window)

    async def resolve(
        self,
        event_id: str | None,
        expected_home: str,
        expected_away: str,
        expected_start: datetime | None,
    ) -> MatchResult:
        """
        Resolve a selection's event to its final result.

        Raises:
            NotFinishedError: event not finished yet, or the matcher cannot
                answer right now (reschedule)
            AmbiguousMatchError: no confident fixture match (stay pending)
            ProviderError: provider failure after retries
        """
        expected_start = as_utc(expected_start)

        method, confidence = "id", 1.0
        event = await self._lookup_by_id(event_id) if event_id else None
        if event is None:
            event, method, confidence = await self._disambiguate(
                event_id, expected_home, expected_away, expected_start
            )

        if not event.finished:
            raise NotFinishedError(
                f"Event {event.event_id} is {event.status}", event_id=event.event_id
            )
        return MatchResult(event=event, method=method, confidence=confidence)

    async def _lookup_by_id(self, event_id: str) -> ProviderEvent | None:
        """Cache then provider. None when the provider does not know the id."""
        alias = await self._cache_get(_alias_key(event_id))
        lookup_id = alias["event_id"] if alias else event_id

        cached = await self._cache_get(event_key(lookup_id))
        if cached is not None:
            return ProviderEvent.from_cache(cached)

        try:
            event = await self.provider.get_event(lookup_id)
        except EventNotFoundError:
            logger.info("event_not_found_by_id", event_id=event_id)
            return None

        await self._remember(event)
        return event

    async def _disambiguate(
        self,
        event_id: str | None,
        expected_home: str,
        expected_away: str,
        expected_start: datetime | None,
    ) -> tuple[ProviderEvent, str, float]:
        candidates = await self._candidates(expected_start)
        if not candidates:
            raise AmbiguousMatchError(
                f"No candidate fixtures near {expected_start} for {expected_home} vs {expected_away}"
            )

        best = self.fuzzy.best_match(expected_home, expected_away, expected_start, candidates)
        if best is not None:
            chosen_id, method, confidence = best.candidate.event_id, "fuzzy", best.confidence
        else:
            chosen_id = await self._ask_disambiguator(
                expected_home, expected_away, expected_start, candidates
            )
            method, confidence = "ai", self.config.min_confidence

        logger.info(
            "fixture_matched",
            wager_event_id=event_id,
            matched_event_id=chosen_id,
            method=method,
            confidence=confidence,
        )
        try:
            event = await self.provider.get_event(chosen_id)
        except EventNotFoundError as e:
            raise AmbiguousMatchError(f"Matched fixture {chosen_id} vanished") from e

        await self._remember(event)
        if event_id and self.cache is not None:
            await self.cache.set(
                _alias_key(event_id),
                {"event_id": chosen_id, "method": method, "confidence": confidence},
                CacheTier.LEAGUE,
            )
        return event, method, confidence

    async def _ask_disambiguator(
        self,
        expected_home: str,
        expected_away: str,
        expected_start: datetime | None,
        candidates: list[EventCandidate],
    ) -> str:
        if self.disambiguator is None or not self.config.ai_enabled:
            raise AmbiguousMatchError(
                f"No confident match for {expected_home} vs {expected_away}"
            )
        in_window = [c for c in candidates if within_window(c, expected_start, self.window)]
        try:
            chosen = await self.disambiguator.choose(
                expected_home, expected_away, expected_start, in_window
            )
        except MatcherUnavailableError as e:
            # Degrade to a reschedule, never to a failed settlement
            raise NotFinishedError(f"Disambiguator unavailable: {e}") from e
        if chosen is None:
            raise AmbiguousMatchError(
                f"Disambiguator found no match for {expected_home} vs {expected_away}"
            )
        return chosen

    async def _candidates(self, expected_start: datetime | None) -> list[EventCandidate]:
        anchor = expected_start or datetime.now().astimezone()
        date_from = anchor - self.window
        date_to = anchor + self.window
        key = fixture_filter_key(
            date_from=date_from.strftime("%Y-%m-%dT%H"),
            date_to=date_to.strftime("%Y-%m-%dT%H"),
        )
        cached = await self._cache_get(key)
        if cached is not None:
            return [EventCandidate.from_cache(item) for item in cached]

        candidates = await self.provider.list_events(date_from, date_to)
        if self.cache is not None:
            await self.cache.set(
                key, [c.to_cache() for c in candidates], CacheTier.FIXTURES
            )
        return candidates

    async def _remember(self, event: ProviderEvent) -> None:
        if self.cache is None:
            return
        tier = CacheTier.LEAGUE if event.finished else CacheTier.LIVE
        await self.cache.set(event_key(event.event_id), event.to_cache(), tier)

    async def _cache_get(self, key: str):
        if self.cache is None:
            return None
        return await self.cache.get(key)
