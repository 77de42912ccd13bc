"""Match result provider client.

Async access to the external fixtures/results API with:
- Rate limiting
- Retry with exponential backoff
- Error classification
- Parsing into the dataclasses in ``schemas``
"""

import asyncio
from datetime import datetime
from typing import Any

import httpx
import redis.asyncio as redis
import structlog

from app.config import get_settings
from app.errors import EventNotFoundError, ProviderError, ProviderErrorType
from app.services.markets.kinds import Score
from app.services.provider.rate_limiter import RequestRateLimiter
from app.services.provider.schemas import (
    EventCandidate,
    MarketOutcome,
    ProviderEvent,
)

logger = structlog.get_logger(__name__)

FINISHED_STATUSES = frozenset({"finished", "ft", "aet", "pen", "ended"})
ABANDONED_STATUSES = frozenset({"abandoned", "cancelled", "canceled", "awarded_void"})


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


class MatchProviderClient:
    """
    Client for the match result provider.

    Supports:
    - Lookup of one event by id (``get_event``)
    - Candidate listing for a date window (``list_events``)
    - Automatic retry with exponential backoff
    """

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = 3,
    ):
        """
        Initialize provider client.

        Args:
            redis_client: Redis client for rate limiting
            rate_limiter: Optional custom rate limiter
            http_client: Optional preconfigured HTTP client
            max_retries: Retries for retryable failures
        """
        self.settings = get_settings()
        self.rate_limiter = rate_limiter or (
            RequestRateLimiter(redis_client) if redis_client is not None else None
        )
        self.max_retries = max_retries
        self._owns_client = http_client is None
        self._http_client = http_client

    async def __aenter__(self) -> "MatchProviderClient":
        await self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.provider_base_url,
                timeout=self.settings.provider_timeout_seconds,
                headers={
                    "Accept": "application/json",
                    "X-Api-Key": self.settings.provider_api_key,
                },
            )
            self._owns_client = True
        return self._http_client

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET ``path`` with rate limiting and retry.

        Raises:
            EventNotFoundError: on HTTP 404
            ProviderError: if the request fails after retries
        """
        for attempt in range(self.max_retries + 1):
            try:
                if self.rate_limiter:
                    await self.rate_limiter.wait_if_needed("provider")

                client = await self._get_client()
                response = await client.get(path, params=params)

                if response.status_code == 404:
                    raise EventNotFoundError(path.rsplit("/", 1)[-1])
                response.raise_for_status()

                try:
                    return response.json()
                except ValueError as e:
                    raise ProviderError(
                        f"Invalid JSON from {path}",
                        ProviderErrorType.MALFORMED_RESPONSE,
                        retryable=False,
                    ) from e

            except httpx.TimeoutException:
                if attempt < self.max_retries:
                    wait_time = 2**attempt
                    logger.warning(
                        "timeout_retrying",
                        path=path,
                        attempt=attempt,
                        wait_time=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue
                raise ProviderError(
                    "Request timeout",
                    ProviderErrorType.TIMEOUT,
                    retryable=True,
                )

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 429 or status >= 500:
                    error_type = (
                        ProviderErrorType.RATE_LIMITED
                        if status == 429
                        else ProviderErrorType.SERVICE_UNAVAILABLE
                    )
                    if attempt < self.max_retries:
                        wait_time = 2**attempt
                        logger.warning(
                            "provider_error_retrying",
                            path=path,
                            status_code=status,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue
                    raise ProviderError(
                        f"Provider returned {status}", error_type, retryable=True
                    )
                if status in (401, 403):
                    raise ProviderError(
                        "Provider rejected credentials",
                        ProviderErrorType.UNAUTHORIZED,
                        retryable=False,
                    )
                if status == 400:
                    logger.warning(
                        "bad_request",
                        path=path,
                        status_code=400,
                        response_text=e.response.text[:500] if e.response.text else "",
                    )
                    raise ProviderError(
                        f"Bad request for {path}",
                        ProviderErrorType.INVALID_INPUT,
                        retryable=False,
                    )
                raise ProviderError(str(e), ProviderErrorType.UNKNOWN, retryable=False)

            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    await asyncio.sleep(2**attempt)
                    continue
                raise ProviderError(
                    f"Network error: {e}",
                    ProviderErrorType.SERVICE_UNAVAILABLE,
                    retryable=True,
                )

        raise ProviderError("Retries exhausted", ProviderErrorType.UNKNOWN, retryable=True)

    async def get_event(self, event_id: str) -> ProviderEvent:
        """
        Fetch the authoritative state of one event.

        Raises:
            EventNotFoundError: if the provider does not know the id
            ProviderError: on transport failure or a malformed payload
        """
        try:
            data = await self._request(f"/events/{event_id}")
        except EventNotFoundError:
            raise EventNotFoundError(str(event_id)) from None
        try:
            return self.parse_event(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Malformed event payload for {event_id}: {e}",
                ProviderErrorType.MALFORMED_RESPONSE,
            ) from e

    async def list_events(self, date_from: datetime, date_to: datetime) -> list[EventCandidate]:
        """Fetch fixtures starting inside ``[date_from, date_to]``."""
        data = await self._request(
            "/events",
            params={"from": date_from.isoformat(), "to": date_to.isoformat()},
        )
        items = data.get("events", []) if isinstance(data, dict) else data
        candidates = []
        for item in items or []:
            try:
                candidates.append(self.parse_candidate(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("candidate_skipped", error=str(e), item_id=item.get("id"))
        return candidates

    @staticmethod
    def parse_candidate(item: dict[str, Any]) -> EventCandidate:
        return EventCandidate(
            event_id=str(item["id"]),
            home_name=item["home"]["name"],
            away_name=item["away"]["name"],
            start_time=datetime.fromisoformat(item["start_time"].replace("Z", "+00:00")),
            league=(item.get("league") or {}).get("name"),
            offers=list(item.get("offers") or []),
        )

    @staticmethod
    def parse_event(data: dict[str, Any]) -> ProviderEvent:
        status = str(data.get("status", "unknown")).lower()
        finished = status in FINISHED_STATUSES or bool(data.get("finished"))
        abandoned = status in ABANDONED_STATUSES

        score = None
        raw_score = data.get("score") or {}
        if raw_score.get("home") is not None and raw_score.get("away") is not None:
            corners = data.get("corners") or {}
            score = Score(
                home=int(raw_score["home"]),
                away=int(raw_score["away"]),
                home_ht=_int_or_none(raw_score.get("ht_home")),
                away_ht=_int_or_none(raw_score.get("ht_away")),
                home_corners=_int_or_none(corners.get("home")),
                away_corners=_int_or_none(corners.get("away")),
            )

        outcomes = []
        for market in data.get("markets") or []:
            for selection in market.get("selections") or []:
                result = selection.get("result")
                if result is None:
                    continue
                result = str(result).lower()
                outcomes.append(
                    MarketOutcome(
                        selection_id=str(selection["id"]),
                        won=True if result == "won" else False if result == "lost" else None,
                        void=result == "void",
                    )
                )

        start = data.get("start_time")
        return ProviderEvent(
            event_id=str(data["id"]),
            home_name=(data.get("home") or {}).get("name", ""),
            away_name=(data.get("away") or {}).get("name", ""),
            start_time=datetime.fromisoformat(start.replace("Z", "+00:00")) if start else None,
            status=status,
            finished=finished or abandoned,
            abandoned=abandoned,
            score=score,
            market_outcomes=outcomes,
        )

    async def health_check(self) -> bool:
        """
        Check if the provider is reachable.

        Returns:
            True if a minimal listing succeeds
        """
        try:
            now = datetime.now().astimezone()
            await self.list_events(now, now)
            return True
        except (ProviderError, EventNotFoundError) as e:
            logger.error("provider_health_check_failed", error=str(e))
            return False
