"""AI-assisted fixture disambiguation.

Second stage of fixture matching, used only when the local fuzzy matcher
found no confident candidate. The model gets the expected fixture and a
numbered candidate list and must answer with one candidate id or NO_MATCH.

Protection, outermost first:
- a global Redis rate limit shared by all workers
- a circuit breaker (pybreaker) that fails fast while the service is down
- API key rotation when a key hits its quota
- a per-request timeout on the OpenAI-compatible client

Every way of not getting an answer raises MatcherUnavailableError, which
the resolver turns into a reschedule.
"""

import asyncio
import re
import time
from datetime import datetime
from functools import lru_cache
from typing import Any

import openai
import structlog
from openai import OpenAI
from pybreaker import CircuitBreaker, CircuitBreakerError

from app.config import get_settings, get_settlement_config
from app.errors import MatcherUnavailableError
from app.services.provider.rate_limiter import RequestRateLimiter
from app.services.provider.schemas import EventCandidate

logger = structlog.get_logger(__name__)

NO_MATCH = "NO_MATCH"


@lru_cache
def get_disambiguator_breaker() -> CircuitBreaker:
    """Process-wide breaker for the disambiguation service."""
    config = get_settlement_config().matching
    return CircuitBreaker(
        fail_max=config.breaker_fail_max,
        reset_timeout=config.breaker_reset_timeout_seconds,
        exclude=[MatcherUnavailableError],
        name="disambiguator",
    )


class KeyRotator:
    """
    Rotates between API keys when one runs out of quota.

    An exhausted key is skipped until its cooldown passes, after which it
    is tried again.
    """

    def __init__(self, keys: list[str], cooldown_seconds: float = 3600.0, clock=time.monotonic):
        self._keys = [k for k in keys if k and k.strip()]
        self._current_index = 0
        self._exhausted_until: dict[int, float] = {}
        self._usage: dict[int, int] = {i: 0 for i in range(len(self._keys))}
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

    def _is_exhausted(self, index: int) -> bool:
        until = self._exhausted_until.get(index)
        if until is None:
            return False
        if self._clock() >= until:
            del self._exhausted_until[index]
            return False
        return True

    @property
    def current_index(self) -> int:
        return self._current_index

    def get_current_key(self) -> str | None:
        """Current usable key, or None when every key is exhausted."""
        if not self._keys:
            return None
        if self._is_exhausted(self._current_index) and not self.rotate_to_next():
            return None
        return self._keys[self._current_index]

    def rotate_to_next(self) -> bool:
        """Move to the next usable key. False when none is left."""
        if not self._keys:
            return False
        for _ in range(len(self._keys)):
            self._current_index = (self._current_index + 1) % len(self._keys)
            if not self._is_exhausted(self._current_index):
                logger.info(
                    "matcher_key_rotated",
                    key_index=self._current_index + 1,
                    available=self.available_count(),
                )
                return True
        logger.warning("matcher_keys_exhausted", total_keys=len(self._keys))
        return False

    def mark_exhausted(self, index: int | None = None) -> None:
        if index is None:
            index = self._current_index
        if 0 <= index < len(self._keys):
            self._exhausted_until[index] = self._clock() + self.cooldown_seconds
            logger.warning(
                "matcher_key_exhausted",
                key_index=index + 1,
                calls=self._usage.get(index, 0),
            )

    def record_call(self) -> None:
        if self._keys:
            self._usage[self._current_index] = self._usage.get(self._current_index, 0) + 1

    def available_count(self) -> int:
        return sum(1 for i in range(len(self._keys)) if not self._is_exhausted(i))

    def is_available(self) -> bool:
        return self.available_count() > 0

    def get_status(self) -> dict[str, Any]:
        return {
            "total_keys": len(self._keys),
            "available_keys": self.available_count(),
            "current_key_index": self._current_index + 1 if self._keys else 0,
            "key_usage": {f"key_{i + 1}": n for i, n in self._usage.items()},
        }


def _is_quota_error(error: Exception) -> bool:
    if isinstance(error, openai.RateLimitError):
        return True
    text = str(error)
    return "RESOURCE_EXHAUSTED" in text or "quota" in text.lower()


def build_prompt(
    expected_home: str,
    expected_away: str,
    expected_start: datetime | None,
    candidates: list[EventCandidate],
) -> str:
    lines = [
        "Find the football fixture that matches the wager below.",
        "Team names may be abbreviated, translated or carry club affixes.",
        "",
        f"Wager fixture: {expected_home} vs {expected_away}",
        f"Kick-off: {expected_start.isoformat() if expected_start else 'unknown'}",
        "",
        "Candidates:",
    ]
    for candidate in candidates:
        league = f" [{candidate.league}]" if candidate.league else ""
        lines.append(
            f"- id={candidate.event_id}: {candidate.home_name} vs {candidate.away_name}, "
            f"{candidate.start_time.isoformat()}{league}"
        )
    lines += [
        "",
        "Answer with the matching id only, or NO_MATCH if none is the same fixture.",
        "Home and away must not be swapped.",
    ]
    return "\n".join(lines)


def parse_reply(reply: str | None, candidates: list[EventCandidate]) -> str | None:
    """Extract a candidate id from the model's reply; None means no match."""
    if not reply:
        return None
    text = reply.strip()
    if NO_MATCH in text.upper():
        return None
    known = {c.event_id for c in candidates}
    cleaned = re.sub(r"^(id\s*[=:]\s*)", "", text, flags=re.IGNORECASE).strip().strip("`'\".")
    if cleaned in known:
        return cleaned
    for token in re.findall(r"[\w-]+", text):
        if token in known:
            return token
    logger.warning("disambiguator_unknown_reply", reply=text[:100])
    return None


class AIDisambiguator:
    """Choose a fixture from a candidate list with an LLM."""

    def __init__(
        self,
        keys: list[str] | KeyRotator | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        timeout: float | None = None,
        model: str | None = None,
        base_url: str | None = None,
        max_rate_wait: float = 5.0,
    ):
        settings = get_settings()
        config = get_settlement_config().matching
        if isinstance(keys, KeyRotator):
            self.rotator = keys
        else:
            self.rotator = KeyRotator(keys if keys is not None else settings.matcher_api_keys)
        self.rate_limiter = rate_limiter
        self.breaker = breaker or get_disambiguator_breaker()
        self.timeout = timeout or config.ai_timeout_seconds
        self.model = model or settings.matcher_model
        self.base_url = base_url or settings.matcher_base_url
        self.max_rate_wait = max_rate_wait
        self._clients: dict[str, OpenAI] = {}

    def _client_for(self, key: str) -> OpenAI:
        if key not in self._clients:
            self._clients[key] = OpenAI(
                api_key=key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._clients[key]

    def _complete(self, prompt: str) -> str | None:
        """Blocking completion with key rotation. Runs in a worker thread."""
        while True:
            key = self.rotator.get_current_key()
            if key is None:
                raise MatcherUnavailableError("All disambiguator keys exhausted")
            try:
                response = self._client_for(key).chat.completions.create(
                    model=self.model,
                    messages=[
                        {
                            "role": "system",
                            "content": "You match football fixtures. Reply with an id or NO_MATCH.",
                        },
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0,
                    max_tokens=20,
                )
            except Exception as e:
                if _is_quota_error(e):
                    self.rotator.mark_exhausted()
                    if not self.rotator.rotate_to_next():
                        raise MatcherUnavailableError("All disambiguator keys exhausted") from e
                    continue
                raise
            self.rotator.record_call()
            return response.choices[0].message.content

    async def choose(
        self,
        expected_home: str,
        expected_away: str,
        expected_start: datetime | None,
        candidates: list[EventCandidate],
    ) -> str | None:
        """
        Return the matching candidate id, or None for NO_MATCH.

        Raises:
            MatcherUnavailableError: keys exhausted, rate limit not granted,
                circuit open, timeout or service error
        """
        if not candidates:
            return None
        if not self.rotator.is_available():
            raise MatcherUnavailableError("No disambiguator key available")

        if self.rate_limiter is not None:
            granted = await self.rate_limiter.wait_if_needed(
                "disambiguator", max_wait=self.max_rate_wait
            )
            if not granted:
                raise MatcherUnavailableError("Disambiguator rate limit reached")

        prompt = build_prompt(expected_home, expected_away, expected_start, candidates)
        try:
            reply = await asyncio.to_thread(self.breaker.call, self._complete, prompt)
        except CircuitBreakerError as e:
            raise MatcherUnavailableError("Disambiguator circuit open") from e
        except MatcherUnavailableError:
            raise
        except openai.APITimeoutError as e:
            raise MatcherUnavailableError("Disambiguator timed out") from e
        except openai.OpenAIError as e:
            logger.warning("disambiguator_error", error=str(e)[:200])
            raise MatcherUnavailableError(f"Disambiguator failed: {e}") from e

        chosen = parse_reply(reply, candidates)
        logger.info(
            "disambiguator_answer",
            home=expected_home,
            away=expected_away,
            candidates=len(candidates),
            chosen=chosen,
        )
        return chosen
