"""Settlement engine tunables.

In-code defaults live on the dataclasses below; ``defaults.yaml`` may
override any of them section by section.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from functools import lru_cache
from typing import Any

from app.config.settings import get_settings


@dataclass
class SweepConfig:
    """Recurring sweep triggers and their ceilings."""
    settlement_interval_seconds: int = 60
    settlement_concurrency: int = 5
    retry_interval_seconds: int = 300    # 5 minutes
    retry_spacing_seconds: float = 2.0   # between consecutive retry items
    default_max_retry_count: int = 3
    fixture_refresh_interval_seconds: int = 21600  # 6 hours
    stale_running_after_seconds: int = 900


@dataclass
class TimingConfig:
    """When wagers become due and how far checks are pushed back."""
    settlement_delay_minutes: int = 125  # kick-off + 2h05m
    past_due_grace_minutes: int = 5
    not_finished_recheck_minutes: int = 10
    provider_error_recheck_minutes: int = 10
    unresolved_cancel_after_hours: int = 48


@dataclass
class CacheConfig:
    """TTL per cache tier, in seconds."""
    live_ttl_seconds: int = 60
    fixtures_ttl_seconds: int = 3600
    league_ttl_seconds: int = 86400
    key_prefix: str = "settle"


@dataclass
class MatchingConfig:
    """Fuzzy and AI-assisted fixture matching."""
    candidate_window_hours: int = 24
    min_confidence: float = 0.6
    ai_enabled: bool = True
    ai_timeout_seconds: float = 20.0
    ai_requests_per_minute: int = 15
    breaker_fail_max: int = 5
    breaker_reset_timeout_seconds: int = 120


@dataclass
class PlacementConfig:
    """Synchronous validation limits applied at placement."""
    min_stake: Decimal = Decimal("0.01")
    min_odds: Decimal = Decimal("1.01")
    max_legs: int = 20


@dataclass
class SettlementConfig:
    """Complete settlement engine configuration."""

    sweeps: SweepConfig = field(default_factory=SweepConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    placement: PlacementConfig = field(default_factory=PlacementConfig)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SettlementConfig":
        """Build a config from a parsed defaults.yaml mapping.

        Unknown sections and keys are ignored so an older YAML file keeps
        loading after a field is removed.
        """
        config = cls()
        for section in fields(cls):
            overrides = raw.get(section.name) or {}
            target = getattr(config, section.name)
            for item in fields(target):
                if item.name not in overrides:
                    continue
                value = overrides[item.name]
                current = getattr(target, item.name)
                if isinstance(current, Decimal):
                    value = Decimal(str(value))
                elif isinstance(current, bool):
                    value = bool(value)
                elif isinstance(current, float):
                    value = float(value)
                elif isinstance(current, int):
                    value = int(value)
                setattr(target, item.name, value)
        return config


@lru_cache
def get_settlement_config() -> SettlementConfig:
    """Get the settlement configuration, merged with defaults.yaml."""
    return SettlementConfig.from_dict(get_settings().load_defaults_config())
