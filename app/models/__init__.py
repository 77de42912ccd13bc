"""Database models for the settlement engine."""

from app.models.base import Base, async_session_factory, engine, get_db
from app.models.domain import (
    TERMINAL_STATUSES,
    Account,
    BalanceEntry,
    EntryKind,
    JobDescriptor,
    JobRun,
    JobState,
    Wager,
    WagerKind,
    WagerLeg,
    WagerStatus,
)

__all__ = [
    # Base
    "Base",
    "engine",
    "async_session_factory",
    "get_db",
    # Domain models
    "Account",
    "BalanceEntry",
    "Wager",
    "WagerLeg",
    "JobDescriptor",
    "JobRun",
    # Enums
    "WagerKind",
    "WagerStatus",
    "TERMINAL_STATUSES",
    "JobState",
    "EntryKind",
]
