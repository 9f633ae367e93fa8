"""
NIMBUS - Ledger

Every balance change goes through LedgerWriter.apply, which moves the
balance with a guarded UPDATE and appends the matching ledger entry in the
caller's transaction. Reconciliation walks the ledger and checks it against
the stored balance.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InsufficientBalanceError,
    LedgerInvariantError,
    UserNotFoundError,
)
from app.models import (
    CurrencyType,
    FinancialTransaction,
    ReferenceType,
    TransactionType,
    User,
)

logger = logging.getLogger(__name__)


def _balance_column(currency: CurrencyType):
    return User.points if currency == CurrencyType.VIRTUAL else User.balance_cents


@dataclass
class ReconciliationResult:
    user_id: UUID
    currency: CurrencyType
    balance: int
    ledger_balance: Optional[int]
    entries: int
    broken_entries: List[int] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        if self.broken_entries:
            return False
        # No entries yet: nothing to contradict the balance
        return self.ledger_balance is None or self.ledger_balance == self.balance

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': str(self.user_id),
            'currency': self.currency.value,
            'balance': self.balance,
            'ledger_balance': self.ledger_balance,
            'entries': self.entries,
            'broken_entries': self.broken_entries,
            'is_consistent': self.is_consistent,
        }


class LedgerWriter:
    """Sole writer of user balances."""

    async def apply(
        self,
        session: AsyncSession,
        user_id: UUID,
        currency: CurrencyType,
        amount: int,
        transaction_type: TransactionType,
        reference_id: Optional[UUID] = None,
        reference_type: Optional[ReferenceType] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> FinancialTransaction:
        """
        Move a balance by amount and record it.

        Debits never take a balance below zero.

        Raises:
            UserNotFoundError: unknown user
            InsufficientBalanceError: debit larger than the balance
        """
        if not isinstance(amount, int):
            raise LedgerInvariantError(f"Ledger amounts must be integers, got {amount!r}")

        column = _balance_column(currency)
        stmt = update(User).where(User.id == user_id)
        if amount < 0:
            stmt = stmt.where(column + amount >= 0)
        stmt = stmt.values({column.key: column + amount}).returning(column)

        result = await session.execute(stmt)
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
            if await session.get(User, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            raise InsufficientBalanceError(
                "Insufficient balance",
                {"required": -amount, "currency": currency.value},
            )

        last_entry = await session.execute(
            select(func.coalesce(func.max(FinancialTransaction.entry_number), 0)).where(
                FinancialTransaction.user_id == user_id,
                FinancialTransaction.currency_type == currency,
            )
        )

        entry = FinancialTransaction(
            user_id=user_id,
            entry_number=last_entry.scalar_one() + 1,
            amount=amount,
            transaction_type=transaction_type,
            reference_id=reference_id,
            reference_type=reference_type,
            balance_before=balance_after - amount,
            balance_after=balance_after,
            currency_type=currency,
            meta=meta,
        )
        session.add(entry)
        await session.flush()

        logger.debug(
            f"Ledger {transaction_type.value} {amount:+d} {currency.value} for {user_id}: "
            f"{entry.balance_before} -> {entry.balance_after}"
        )
        return entry

    async def reconcile(
        self,
        session: AsyncSession,
        user_id: UUID,
        currency: CurrencyType,
    ) -> ReconciliationResult:
        """Check the ledger chain and compare its end balance with the stored one"""
        user = await session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        await session.refresh(user)

        result = await session.execute(
            select(FinancialTransaction)
            .where(
                FinancialTransaction.user_id == user_id,
                FinancialTransaction.currency_type == currency,
            )
            .order_by(FinancialTransaction.entry_number)
        )
        entries = list(result.scalars())

        broken = []
        previous_after: Optional[int] = None
        for entry in entries:
            if entry.balance_after != entry.balance_before + entry.amount:
                broken.append(entry.entry_number)
            elif previous_after is not None and entry.balance_before != previous_after:
                broken.append(entry.entry_number)
            previous_after = entry.balance_after

        report = ReconciliationResult(
            user_id=user_id,
            currency=currency,
            balance=user.balance_for(currency),
            ledger_balance=entries[-1].balance_after if entries else None,
            entries=len(entries),
            broken_entries=broken,
        )
        if not report.is_consistent:
            logger.error(f"Ledger mismatch for {user_id} ({currency.value}): {report.to_dict()}")
        return report
