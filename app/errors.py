"""Exception taxonomy for the settlement engine.

Placement errors (``ValidationError``, ``InsufficientFundsError``) are raised
synchronously to the caller. Everything else is raised while settling and is
contained per wager by the sweeps.
"""

from enum import Enum


class SettlementError(Exception):
    """Base class for all settlement engine errors."""


class ValidationError(SettlementError):
    """Wager rejected at placement (bad stake, missing selection, conflicts)."""


class InsufficientFundsError(SettlementError):
    """The account balance does not cover the requested debit."""

    def __init__(self, account_id: int, requested, available):
        super().__init__(
            f"Account {account_id} has {available} available, {requested} requested"
        )
        self.account_id = account_id
        self.requested = requested
        self.available = available


class NotFinishedError(SettlementError):
    """The event has no final result yet. The caller must reschedule."""

    def __init__(self, message: str = "Event not finished", event_id: str | None = None):
        super().__init__(message)
        self.event_id = event_id


class ProviderErrorType(Enum):
    """Provider error classification."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    MALFORMED_RESPONSE = "malformed_response"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNAUTHORIZED = "unauthorized"
    INVALID_INPUT = "invalid_input"
    UNKNOWN = "unknown"


class ProviderError(SettlementError):
    """Provider request failed after the client's own retries."""

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType = ProviderErrorType.UNKNOWN,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.retryable = retryable


class EventNotFoundError(SettlementError):
    """The provider does not know the requested event id."""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


class AmbiguousMatchError(SettlementError):
    """No candidate fixture could be matched with enough confidence."""


class MatcherUnavailableError(SettlementError):
    """The AI disambiguator cannot answer right now (quota, breaker, timeout)."""


class LedgerConsistencyError(SettlementError):
    """A settlement conflicts with the wager's persisted terminal state."""

    def __init__(self, wager_id: int, current_status: str, requested_status: str):
        super().__init__(
            f"Wager {wager_id} is already {current_status}, refusing {requested_status}"
        )
        self.wager_id = wager_id
        self.current_status = current_status
        self.requested_status = requested_status
