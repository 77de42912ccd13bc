"""Domain models for the settlement engine.

A Wager is owned by exactly one Account and moves through a small status
machine. Stake and placement odds are frozen at creation; only status,
payout, profit and the retry bookkeeping change afterwards. Every movement of
funds is a BalanceEntry with a unique reference, written in the same
transaction as the wager transition that caused it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType, TimestampMixin


class WagerKind(str, Enum):
    SINGLE = "single"
    COMBINATION = "combination"


class WagerStatus(str, Enum):
    """Wager (and leg) lifecycle states."""

    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    VOID = "void"
    CANCELLED = "cancelled"
    HALF_WON = "half_won"
    HALF_LOST = "half_lost"

    @property
    def is_terminal(self) -> bool:
        """Terminal states are write-once. Cancelled may be re-evaluated."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        WagerStatus.WON,
        WagerStatus.LOST,
        WagerStatus.VOID,
        WagerStatus.HALF_WON,
        WagerStatus.HALF_LOST,
    }
)

DEFAULT_MAX_RETRY_COUNT = 3


class JobState(str, Enum):
    """Scheduling state of a recurring job descriptor."""

    UNSCHEDULED = "unscheduled"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    CANCELLING = "cancelling"


class EntryKind(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class Account(Base, TimestampMixin):
    """
    Funds holder for one customer.

    The balance is only ever changed through BalanceEntry rows written by
    the balance service.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_ref: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )

    entries: Mapped[list["BalanceEntry"]] = relationship(
        "BalanceEntry", back_populates="account"
    )

    def __repr__(self) -> str:
        return f"<Account {self.external_ref} balance={self.balance}>"


class BalanceEntry(Base):
    """
    Single debit or credit against an account.

    ``reference`` is unique: posting the same reference twice is a no-op,
    which is what makes settlement safe to re-run.
    """

    __tablename__ = "balance_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    wager_id: Mapped[int | None] = mapped_column(
        ForeignKey("wagers.id", ondelete="SET NULL"), nullable=True
    )
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reference: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="entries")

    __table_args__ = (Index("ix_balance_entries_account", "account_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<BalanceEntry {self.kind} {self.amount} ref={self.reference}>"


class SelectionColumnsMixin:
    """Per-selection snapshot shared by single wagers and combination legs."""

    market_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    market_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    market_kind: Mapped[str | None] = mapped_column(
        String(40), nullable=True, doc="MarketKind chosen at placement"
    )
    selection_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    selection_label: Mapped[str | None] = mapped_column(String(120), nullable=True)
    line: Mapped[Decimal | None] = mapped_column(
        Numeric(6, 2), nullable=True, doc="Handicap or total line"
    )
    odds_at_placement: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    home_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    away_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    event_start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    estimated_settlement_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    final_score: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolved_event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Wager(Base, SelectionColumnsMixin):
    """
    A stake placed on one selection (single) or several legs (combination).

    For combinations the selection columns on this row stay empty, the legs
    carry them, and ``estimated_settlement_time`` is the latest leg's.
    """

    __tablename__ = "wagers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    stake: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_odds: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WagerStatus.PENDING.value
    )
    payout: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    profit: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2), nullable=True, doc="Persisted once set; NULL only on legacy rows"
    )
    credited_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_RETRY_COUNT, doc="Remaining retries, counts down"
    )
    max_retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_RETRY_COUNT
    )
    inplay: Mapped[bool] = mapped_column(default=False)

    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settlement_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    match_method: Mapped[str | None] = mapped_column(
        String(10), nullable=True, doc="'id', 'fuzzy' or 'ai'"
    )
    match_confidence: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    legs: Mapped[list["WagerLeg"]] = relationship(
        "WagerLeg",
        back_populates="wager",
        order_by="WagerLeg.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_wagers_status_due", "status", "estimated_settlement_time"),
        Index("ix_wagers_retryable", "status", "max_retry_count"),
        Index("ix_wagers_account", "account_id", "created_at"),
    )

    @property
    def is_combination(self) -> bool:
        return self.kind == WagerKind.COMBINATION.value

    @property
    def effective_profit(self) -> Decimal:
        """Persisted profit, falling back to payout - stake for legacy rows."""
        if self.profit is not None:
            return self.profit
        return self.payout - self.stake

    def __repr__(self) -> str:
        return f"<Wager {self.id} {self.kind} {self.status} stake={self.stake}>"


class WagerLeg(Base, SelectionColumnsMixin):
    """One selection inside a combination wager."""

    __tablename__ = "wager_legs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wager_id: Mapped[int] = mapped_column(
        ForeignKey("wagers.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    leg_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WagerStatus.PENDING.value
    )

    wager: Mapped["Wager"] = relationship("Wager", back_populates="legs")

    __table_args__ = (UniqueConstraint("wager_id", "position", name="uq_wager_leg_position"),)

    def __repr__(self) -> str:
        return f"<WagerLeg {self.wager_id}#{self.position} {self.leg_status}>"


class JobDescriptor(Base):
    """
    Persisted scheduling intent for one recurring job.

    The row is the source of truth for whether a job is scheduled; worker
    restarts reconcile against it instead of trusting process memory.
    """

    __tablename__ = "job_descriptors"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    task: Mapped[str] = mapped_column(String(200), nullable=False)
    trigger_kind: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'interval' or 'crontab'"
    )
    trigger_expr: Mapped[str] = mapped_column(
        String(100), nullable=False, doc="Seconds for interval, 5-field cron otherwise"
    )
    concurrency_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobState.UNSCHEDULED.value
    )
    last_scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<JobDescriptor {self.name} {self.state}>"


class JobRun(Base):
    """
    Task execution audit log.

    Every sweep and one-off settlement check is logged here for:
    1. Monitoring and alerting
    2. Debugging failures
    3. Tracking how many wagers each run settled
    """

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'running', 'success', 'failed', 'skipped'"
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    __table_args__ = (Index("ix_job_runs_job_name_started", "job_name", "started_at"),)

    def __repr__(self) -> str:
        return f"<JobRun {self.job_name} status={self.status}>"
