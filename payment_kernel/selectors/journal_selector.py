"""
Module: payment_kernel.selectors.journal_selector
Responsibility: Read-only access to financial transactions and per-account
    balances derived from them.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Balances count posted and reversed transactions; a reversal is itself
      posted, so an original and its reversal net to zero per account.
    - Pending and void transactions never contribute.

Audit relevance:
    ``account_balances`` is a trial balance in transaction currency; the sum
    of debits equals the sum of credits per currency by construction.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from payment_kernel.db.types import ZERO, enum_value
from payment_kernel.models.journal import FinancialTransaction, TransactionStatus
from payment_kernel.selectors.base import BaseSelector

_BALANCE_STATUSES = (TransactionStatus.POSTED.value, TransactionStatus.REVERSED.value)


@dataclass(frozen=True)
class FinancialTransactionDTO:
    id: UUID
    sequence: int
    transaction_type: str
    reference_type: str
    reference_id: UUID
    order_id: UUID | None
    debit_account: str
    credit_account: str
    amount: Decimal
    currency: str
    status: str
    posted_at: datetime | None
    approved_by_id: UUID | None
    reversal_of_id: UUID | None
    reversed_by_id: UUID | None


@dataclass(frozen=True)
class AccountBalance:
    """Debit and credit totals for one account and currency."""

    account_code: str
    currency: str
    debit_total: Decimal
    credit_total: Decimal

    @property
    def balance(self) -> Decimal:
        """Net balance (debits - credits)."""
        return self.debit_total - self.credit_total


def _to_dto(txn: FinancialTransaction) -> FinancialTransactionDTO:
    return FinancialTransactionDTO(
        id=txn.id,
        sequence=txn.sequence,
        transaction_type=enum_value(txn.transaction_type),
        reference_type=enum_value(txn.reference_type),
        reference_id=txn.reference_id,
        order_id=txn.order_id,
        debit_account=txn.debit_account,
        credit_account=txn.credit_account,
        amount=Decimal(txn.amount),
        currency=txn.currency,
        status=enum_value(txn.status),
        posted_at=txn.posted_at,
        approved_by_id=txn.approved_by_id,
        reversal_of_id=txn.reversal_of_id,
        reversed_by_id=txn.reversed_by_id,
    )


class JournalSelector(BaseSelector[FinancialTransaction]):
    """Selector for journal reads."""

    def get(self, transaction_id: UUID) -> FinancialTransactionDTO | None:
        txn = self.session.get(FinancialTransaction, transaction_id)
        return _to_dto(txn) if txn is not None else None

    def for_order(self, order_id: UUID) -> list[FinancialTransactionDTO]:
        rows = self.session.execute(
            select(FinancialTransaction)
            .where(FinancialTransaction.order_id == order_id)
            .order_by(FinancialTransaction.sequence)
        ).scalars()
        return [_to_dto(t) for t in rows]

    def for_reference(self, reference_id: UUID) -> list[FinancialTransactionDTO]:
        rows = self.session.execute(
            select(FinancialTransaction)
            .where(FinancialTransaction.reference_id == reference_id)
            .order_by(FinancialTransaction.sequence)
        ).scalars()
        return [_to_dto(t) for t in rows]

    def account_balances(self, currency: str | None = None) -> list[AccountBalance]:
        """One row per (account, currency), ordered by account code."""
        query = select(
            FinancialTransaction.debit_account,
            FinancialTransaction.credit_account,
            FinancialTransaction.amount,
            FinancialTransaction.currency,
        ).where(FinancialTransaction.status.in_(_BALANCE_STATUSES))
        if currency is not None:
            query = query.where(FinancialTransaction.currency == currency)

        debits: dict[tuple[str, str], Decimal] = {}
        credits: dict[tuple[str, str], Decimal] = {}
        for debit, credit, amount, ccy in self.session.execute(query).all():
            amount = Decimal(amount)
            debits[(debit, ccy)] = debits.get((debit, ccy), ZERO) + amount
            credits[(credit, ccy)] = credits.get((credit, ccy), ZERO) + amount

        keys = sorted(set(debits) | set(credits))
        return [
            AccountBalance(
                account_code=code,
                currency=ccy,
                debit_total=debits.get((code, ccy), ZERO),
                credit_total=credits.get((code, ccy), ZERO),
            )
            for code, ccy in keys
        ]

    def account_balance(self, account_code: str, currency: str) -> Decimal:
        for row in self.account_balances(currency):
            if row.account_code == account_code:
                return row.balance
        return ZERO
