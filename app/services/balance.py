"""Balance account service.

``BalanceAccountService`` is the interface the engine debits at placement
and credits on settlement. ``SqlBalanceAccountService`` implements it on the
engine's own database session, so a debit or credit commits or rolls back
together with the wager transition that caused it.

Every posting carries a reference. Posting a reference that already exists
is a no-op returning the original entry, which makes settlement safe to
re-run after an interruption.
"""

from decimal import Decimal
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InsufficientFundsError, ValidationError
from app.models.base import utcnow
from app.models.domain import Account, BalanceEntry, EntryKind

logger = structlog.get_logger(__name__)


class BalanceAccountService(Protocol):
    async def debit(
        self,
        account_id: int,
        amount: Decimal,
        reference: str,
        wager_id: int | None = None,
        allow_overdraft: bool = False,
    ) -> BalanceEntry: ...

    async def credit(
        self,
        account_id: int,
        amount: Decimal,
        reference: str,
        wager_id: int | None = None,
    ) -> BalanceEntry: ...

    async def get_balance(self, account_id: int) -> Decimal: ...


class SqlBalanceAccountService:
    """Balance postings inside the caller's session. The caller commits."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _lock_account(self, account_id: int) -> Account:
        result = await self.session.execute(
            select(Account).where(Account.id == account_id).with_for_update()
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise ValidationError(f"Account {account_id} does not exist")
        return account

    async def _existing(self, reference: str) -> BalanceEntry | None:
        result = await self.session.execute(
            select(BalanceEntry).where(BalanceEntry.reference == reference)
        )
        return result.scalar_one_or_none()

    async def _post(
        self,
        kind: EntryKind,
        account_id: int,
        amount: Decimal,
        reference: str,
        wager_id: int | None,
        allow_overdraft: bool = False,
    ) -> BalanceEntry:
        if amount <= 0:
            raise ValidationError(f"{kind.value} amount must be positive, got {amount}")

        existing = await self._existing(reference)
        if existing is not None:
            logger.info("balance_posting_already_applied", reference=reference, kind=kind.value)
            return existing

        account = await self._lock_account(account_id)
        if kind == EntryKind.DEBIT:
            if account.balance < amount and not allow_overdraft:
                raise InsufficientFundsError(account_id, amount, account.balance)
            account.balance = account.balance - amount
        else:
            account.balance = account.balance + amount

        entry = BalanceEntry(
            account_id=account_id,
            wager_id=wager_id,
            kind=kind.value,
            amount=amount,
            balance_after=account.balance,
            reference=reference,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        logger.info(
            "balance_posted",
            account_id=account_id,
            kind=kind.value,
            amount=str(amount),
            balance_after=str(account.balance),
            reference=reference,
        )
        return entry

    async def debit(
        self,
        account_id: int,
        amount: Decimal,
        reference: str,
        wager_id: int | None = None,
        allow_overdraft: bool = False,
    ) -> BalanceEntry:
        """
        Take ``amount`` from the account.

        Raises:
            InsufficientFundsError: balance below amount (unless overdraft is
                allowed, which only settlement reversals use)
        """
        return await self._post(
            EntryKind.DEBIT, account_id, amount, reference, wager_id, allow_overdraft
        )

    async def credit(
        self,
        account_id: int,
        amount: Decimal,
        reference: str,
        wager_id: int | None = None,
    ) -> BalanceEntry:
        return await self._post(EntryKind.CREDIT, account_id, amount, reference, wager_id)

    async def get_balance(self, account_id: int) -> Decimal:
        account = await self.session.get(Account, account_id)
        if account is None:
            raise ValidationError(f"Account {account_id} does not exist")
        return account.balance
