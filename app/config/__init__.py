"""Configuration for the settlement engine."""

from app.config.settings import Settings, get_settings
from app.config.settlement import SettlementConfig, get_settlement_config

__all__ = ["Settings", "get_settings", "SettlementConfig", "get_settlement_config"]
