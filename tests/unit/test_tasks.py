"""Unit tests for the Celery wiring and the fixture warm-up job."""

from datetime import timedelta

from app.config.settlement import CacheConfig
from app.models.base import utcnow
from app.services.cache import FixtureCache, fixture_filter_key, odds_key
from app.services.provider.schemas import EventCandidate
from app.tasks import build_beat_schedule
from app.tasks.settlement import refresh_fixtures


class ListingProvider:
    def __init__(self, candidates):
        self.candidates = candidates
        self.windows = []

    async def list_events(self, date_from, date_to):
        self.windows.append((date_from, date_to))
        return self.candidates


class TestBeatSchedule:
    def test_every_recurring_job_has_an_entry(self):
        schedule = build_beat_schedule()
        assert set(schedule) == {"settlement-sweep", "retry-sweep", "refresh-fixtures"}
        entry = schedule["settlement-sweep"]
        assert entry["task"] == "app.tasks.settlement.settlement_sweep"
        assert entry["args"] == ["settlement-sweep"]
        assert entry["options"]["expires"] < entry["schedule"]


class TestRefreshFixtures:
    async def test_caches_listing_and_grouped_odds(self, fake_redis):
        now = utcnow()
        candidates = [
            EventCandidate(
                "e1",
                "Arsenal",
                "Chelsea",
                now + timedelta(hours=3),
                offers=[
                    {"market_name": "Match Result", "selection_label": "1", "odds": 2.1},
                    {"market_name": "Total Corners", "selection_label": "Over 9.5", "odds": 1.9},
                ],
            ),
            EventCandidate("e2", "Lazio", "Roma", now + timedelta(hours=20)),
        ]
        provider = ListingProvider(candidates)
        cache = FixtureCache(fake_redis, CacheConfig())

        stats = await refresh_fixtures(provider, cache, now, hours=24)

        assert stats == {"fixtures_cached": 2, "odds_groups": 2}
        assert provider.windows == [(now, now + timedelta(hours=24))]
        listing = await cache.get(
            fixture_filter_key(scope="upcoming", date=now.strftime("%Y-%m-%d"), hours=24)
        )
        assert [item["event_id"] for item in listing] == ["e1", "e2"]
        groups = await cache.get(odds_key("e1"))
        assert [g["id"] for g in groups] == ["full-time", "corners"]
        assert await cache.get(odds_key("e2")) is None
