"""Unit tests for the match result resolver."""

from datetime import datetime, timezone

import pytest

from app.config.settlement import CacheConfig, MatchingConfig
from app.errors import AmbiguousMatchError, EventNotFoundError, MatcherUnavailableError, NotFinishedError
from app.services.cache import FixtureCache
from app.services.markets import Score
from app.services.provider.schemas import EventCandidate, ProviderEvent
from app.services.resolver import MatchResultResolver

KICK_OFF = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)


def provider_event(event_id, finished=True, home="Arsenal", away="Chelsea"):
    return ProviderEvent(
        event_id=event_id,
        home_name=home,
        away_name=away,
        start_time=KICK_OFF,
        status="finished" if finished else "live",
        finished=finished,
        score=Score(2, 0) if finished else Score(0, 0),
    )


class FakeProvider:
    """Serves events by id and a fixed candidate listing."""

    def __init__(self, events=None, candidates=None):
        self.events = {e.event_id: e for e in events or []}
        self.candidates = candidates or []
        self.get_calls = []
        self.list_calls = 0

    async def get_event(self, event_id):
        self.get_calls.append(event_id)
        if event_id not in self.events:
            raise EventNotFoundError(event_id)
        return self.events[event_id]

    async def list_events(self, date_from, date_to):
        self.list_calls += 1
        return list(self.candidates)


class FakeDisambiguator:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.asked_with = None

    async def choose(self, home, away, start, candidates):
        self.asked_with = candidates
        if self.error:
            raise self.error
        return self.answer


def make_resolver(provider, fake_redis=None, disambiguator=None, ai_enabled=True):
    cache = FixtureCache(fake_redis, CacheConfig()) if fake_redis is not None else None
    return MatchResultResolver(
        provider,
        cache=cache,
        disambiguator=disambiguator,
        config=MatchingConfig(ai_enabled=ai_enabled),
    )


class TestExactLookup:
    async def test_id_hit(self):
        resolver = make_resolver(FakeProvider(events=[provider_event("e1")]))
        result = await resolver.resolve("e1", "Arsenal", "Chelsea", KICK_OFF)
        assert result.event_id == "e1"
        assert result.method == "id"
        assert result.score.home == 2

    async def test_unfinished_raises(self):
        resolver = make_resolver(FakeProvider(events=[provider_event("e1", finished=False)]))
        with pytest.raises(NotFinishedError):
            await resolver.resolve("e1", "Arsenal", "Chelsea", KICK_OFF)

    async def test_finished_result_served_from_cache(self, fake_redis):
        provider = FakeProvider(events=[provider_event("e1")])
        resolver = make_resolver(provider, fake_redis)
        await resolver.resolve("e1", "Arsenal", "Chelsea", KICK_OFF)
        await resolver.resolve("e1", "Arsenal", "Chelsea", KICK_OFF)
        assert provider.get_calls == ["e1"]


class TestFallbackMatching:
    """Unknown event ids fall back to fixture matching."""

    def candidates(self):
        return [
            EventCandidate("p-7", "Arsenal FC", "Chelsea FC", KICK_OFF),
            EventCandidate("p-8", "Everton", "Fulham", KICK_OFF),
        ]

    async def test_fuzzy_match_and_alias(self, fake_redis):
        provider = FakeProvider(events=[provider_event("p-7")], candidates=self.candidates())
        resolver = make_resolver(provider, fake_redis)

        result = await resolver.resolve("old-1", "Arsenal", "Chelsea", KICK_OFF)
        assert result.event_id == "p-7"
        assert result.method == "fuzzy"

        # Second resolution goes straight to the remapped id
        again = await resolver.resolve("old-1", "Arsenal", "Chelsea", KICK_OFF)
        assert again.event_id == "p-7"
        assert provider.list_calls == 1

    async def test_no_candidates_is_ambiguous(self):
        resolver = make_resolver(FakeProvider())
        with pytest.raises(AmbiguousMatchError):
            await resolver.resolve("old-1", "Arsenal", "Chelsea", KICK_OFF)

    async def test_no_confident_match_without_ai(self):
        resolver = make_resolver(FakeProvider(candidates=self.candidates()), ai_enabled=False)
        with pytest.raises(AmbiguousMatchError):
            await resolver.resolve("old-1", "Napoli", "Lazio", KICK_OFF)

    async def test_ai_picks_candidate(self):
        provider = FakeProvider(events=[provider_event("p-8")], candidates=self.candidates())
        disambiguator = FakeDisambiguator(answer="p-8")
        resolver = make_resolver(provider, disambiguator=disambiguator)

        result = await resolver.resolve("old-1", "Toffees", "Cottagers", KICK_OFF)
        assert result.event_id == "p-8"
        assert result.method == "ai"
        assert len(disambiguator.asked_with) == 2

    async def test_ai_no_match_is_ambiguous(self):
        resolver = make_resolver(
            FakeProvider(candidates=self.candidates()), disambiguator=FakeDisambiguator(answer=None)
        )
        with pytest.raises(AmbiguousMatchError):
            await resolver.resolve("old-1", "Napoli", "Lazio", KICK_OFF)

    async def test_ai_unavailable_reschedules(self):
        """An unavailable matcher must read as 'not finished', never as a failure."""
        disambiguator = FakeDisambiguator(error=MatcherUnavailableError("circuit open"))
        resolver = make_resolver(FakeProvider(candidates=self.candidates()), disambiguator=disambiguator)
        with pytest.raises(NotFinishedError):
            await resolver.resolve("old-1", "Napoli", "Lazio", KICK_OFF)
