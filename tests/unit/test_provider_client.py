"""Unit tests for the match result provider client (httpx MockTransport)."""

from datetime import datetime, timezone

import httpx
import pytest

from app.errors import EventNotFoundError, ProviderError, ProviderErrorType
from app.services.provider import MatchProviderClient

FINISHED_EVENT = {
    "id": 991,
    "status": "FT",
    "start_time": "2026-10-18T15:00:00Z",
    "home": {"name": "Arsenal"},
    "away": {"name": "Chelsea"},
    "score": {"home": 2, "away": 1, "ht_home": 1, "ht_away": 1},
    "corners": {"home": 7, "away": 3},
    "markets": [
        {
            "name": "First Goalscorer",
            "selections": [
                {"id": "fg-1", "result": "won"},
                {"id": "fg-2", "result": "lost"},
                {"id": "fg-3", "result": "void"},
                {"id": "fg-4"},
            ],
        }
    ],
}


def make_client(handler, max_retries=0):
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://provider.test"
    )
    return MatchProviderClient(http_client=http_client, max_retries=max_retries)


class TestParseEvent:
    def test_finished_event(self):
        event = MatchProviderClient.parse_event(FINISHED_EVENT)
        assert event.event_id == "991"
        assert event.finished and not event.abandoned
        assert (event.score.home, event.score.away) == (2, 1)
        assert event.score.home_ht == 1
        assert (event.score.home_corners, event.score.away_corners) == (7, 3)
        assert event.start_time == datetime(2026, 10, 18, 15, tzinfo=timezone.utc)

    def test_selection_flags(self):
        event = MatchProviderClient.parse_event(FINISHED_EVENT)
        assert event.outcome_for("fg-1").won is True
        assert event.outcome_for("fg-2").won is False
        assert event.outcome_for("fg-3").void
        assert event.outcome_for("fg-4") is None

    def test_abandoned_counts_as_finished(self):
        event = MatchProviderClient.parse_event({"id": 1, "status": "Abandoned"})
        assert event.abandoned and event.finished
        assert event.score is None

    def test_live_event(self):
        event = MatchProviderClient.parse_event(
            {"id": 1, "status": "live", "score": {"home": 0, "away": 0}}
        )
        assert not event.finished


class TestRequests:
    async def test_get_event(self):
        def handler(request):
            assert request.url.path == "/events/991"
            return httpx.Response(200, json=FINISHED_EVENT)

        async with make_client(handler) as client:
            event = await client.get_event("991")
        assert event.finished

    async def test_unknown_event(self):
        async with make_client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(EventNotFoundError) as exc_info:
                await client.get_event("123")
        assert exc_info.value.event_id == "123"

    async def test_unauthorized_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        async with make_client(handler, max_retries=3) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.get_event("1")
        assert exc_info.value.error_type == ProviderErrorType.UNAUTHORIZED
        assert len(calls) == 1

    async def test_server_error_retried(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json=FINISHED_EVENT)])

        async with make_client(lambda request: next(responses), max_retries=2) as client:
            event = await client.get_event("991")
        assert event.event_id == "991"

    async def test_server_error_exhausted(self):
        async with make_client(lambda request: httpx.Response(502)) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.get_event("1")
        assert exc_info.value.error_type == ProviderErrorType.SERVICE_UNAVAILABLE
        assert exc_info.value.retryable

    async def test_malformed_payload(self):
        async with make_client(lambda request: httpx.Response(200, json={"status": "ft"})) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.get_event("1")
        assert exc_info.value.error_type == ProviderErrorType.MALFORMED_RESPONSE

    async def test_list_events_skips_bad_items(self):
        payload = {
            "events": [
                {
                    "id": 5,
                    "home": {"name": "Lazio"},
                    "away": {"name": "Roma"},
                    "start_time": "2026-10-18T18:45:00+00:00",
                    "league": {"name": "Serie A"},
                },
                {"id": 6, "home": {"name": "Broken"}},
            ]
        }

        def handler(request):
            assert "from" in request.url.params
            return httpx.Response(200, json=payload)

        start = datetime(2026, 10, 18, tzinfo=timezone.utc)
        async with make_client(handler) as client:
            candidates = await client.list_events(start, start)
        assert [c.event_id for c in candidates] == ["5"]
        assert candidates[0].league == "Serie A"
