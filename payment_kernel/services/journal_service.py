"""
JournalService -- double-entry postings: record, post, void, reverse.

Responsibility:
    Writes ``FinancialTransaction`` rows for ledger events, credit-note
    issuance and their compensations.  Applies the account selection rule
    (configured posting rules with the gateway cash account resolved) and
    enforces the journal's structural invariants.

Architecture position:
    Kernel > Services -- imperative shell.  Called by LedgerService (one
    posting per ledger entry) and by the credit-note module (issuance).

Invariants enforced:
    - debit account != credit account; amount > 0; both accounts exist and
      are active.
    - Lifecycle pending -> posted -> reversed, or pending -> void.
    - Reverse swaps accounts, copies amount and currency, links both rows,
      and may happen once per original (unique reversal_of_id).

Failure modes:
    - SameAccountPostingError, InvalidAmountError, InvalidCurrencyError,
      AccountNotFoundError, AccountInactiveError on record.
    - TransactionNotPendingError on post/void of a non-pending row.
    - EntryNotPostedError / EntryAlreadyReversedError on reverse.

Audit relevance:
    Every transition is logged with transaction id, accounts and amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from payment_config import PaymentConfig
from payment_kernel.db.types import ZERO, enum_value, to_money, validate_currency
from payment_kernel.domain.clock import Clock
from payment_kernel.exceptions import (
    EntryAlreadyReversedError,
    EntryNotPostedError,
    FinancialTransactionNotFoundError,
    InvalidAmountError,
    SameAccountPostingError,
    TransactionNotPendingError,
)
from payment_kernel.logging_config import get_logger
from payment_kernel.models.journal import (
    FinancialTransaction,
    ReferenceType,
    TransactionStatus,
    TransactionType,
)
from payment_kernel.services.base import BaseService
from payment_kernel.services.chart_service import ChartOfAccountsService
from payment_kernel.services.sequence_service import SequenceService, SequenceSource

logger = get_logger("services.journal")


@dataclass(frozen=True)
class ReversalResult:
    original_id: UUID
    reversal_id: UUID
    debit_account: str
    credit_account: str
    amount: Decimal
    currency: str


class JournalService(BaseService):
    """
    Contract:
        Every public mutator flushes and returns the affected row(s).

    Non-goals:
        - Does NOT commit.
        - Does NOT touch ledger entries or the order projection.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: PaymentConfig | None = None,
        sequence: SequenceSource | None = None,
    ):
        super().__init__(session, clock, config)
        self._sequence = sequence or SequenceService(session)
        self._chart = ChartOfAccountsService(session, self.clock, self.config)

    # -------------------------------------------------------------------------
    # Record / post
    # -------------------------------------------------------------------------

    def record(
        self,
        *,
        debit_account: str,
        credit_account: str,
        amount: Decimal,
        currency: str,
        transaction_type: TransactionType,
        reference_type: ReferenceType,
        reference_id: UUID,
        actor_id: UUID,
        order_id: UUID | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        post_immediately: bool = True,
    ) -> FinancialTransaction:
        """
        Create a transaction, posted straight through unless
        ``post_immediately`` is False (then it stays pending).
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise InvalidAmountError(amount, "journal amount must be positive")
        if debit_account == credit_account:
            raise SameAccountPostingError(debit_account)
        currency = validate_currency(currency)
        self._chart.require_postable(debit_account)
        self._chart.require_postable(credit_account)

        now = self.clock.now()
        txn = FinancialTransaction(
            sequence=self._sequence.next_value(SequenceSource.FINANCIAL_TRANSACTION),
            transaction_type=TransactionType(transaction_type),
            reference_type=ReferenceType(reference_type),
            reference_id=reference_id,
            order_id=order_id,
            debit_account=debit_account,
            credit_account=credit_account,
            amount=amount,
            currency=currency,
            status=TransactionStatus.PENDING,
            description=description,
            transaction_metadata=metadata,
            created_by_id=actor_id,
            created_at=now,
            updated_at=now,
        )
        if post_immediately:
            txn.status = TransactionStatus.POSTED
            txn.posted_at = now
            txn.approved_by_id = actor_id
            txn.approved_at = now
        self.session.add(txn)
        self.session.flush()

        logger.info(
            "journal_transaction_recorded",
            extra={
                "transaction_id": str(txn.id),
                "debit_account": debit_account,
                "credit_account": credit_account,
                "amount": str(amount),
                "currency": currency,
                "status": txn.status,
                "reference_type": enum_value(txn.reference_type),
            },
        )
        return txn

    def record_for_rule(
        self,
        rule_name: str,
        *,
        gateway: str | None,
        amount: Decimal,
        currency: str,
        reference_type: ReferenceType,
        reference_id: UUID,
        actor_id: UUID,
        order_id: UUID | None = None,
        description: str | None = None,
        post_immediately: bool = True,
    ) -> FinancialTransaction:
        """
        Record using the account selection rule for ``rule_name``.

        customer_payment: Dr gateway cash / Cr receivable; refunds: Dr refunds
        expense / Cr gateway cash; credit applications: Dr refunds expense /
        Cr customer deposits (see posting_rules in configuration).
        """
        debit, credit = self.config.resolve_accounts(rule_name, gateway)
        rule = self.config.posting_rule(rule_name)
        return self.record(
            debit_account=debit,
            credit_account=credit,
            amount=amount,
            currency=currency,
            transaction_type=TransactionType(rule.transaction_type),
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            order_id=order_id,
            description=description,
            metadata={"posting_rule": rule.name, "gateway": gateway},
            post_immediately=post_immediately,
        )

    def post(self, transaction_id: UUID, approver_id: UUID) -> FinancialTransaction:
        """pending -> posted."""
        txn = self._load_for_update(transaction_id)
        if txn.status != TransactionStatus.PENDING:
            raise TransactionNotPendingError(txn.id, enum_value(txn.status))
        now = self.clock.now()
        txn.status = TransactionStatus.POSTED
        txn.posted_at = now
        txn.approved_by_id = approver_id
        txn.approved_at = now
        txn.updated_by_id = approver_id
        self.session.flush()
        logger.info("journal_transaction_posted", extra={"transaction_id": str(txn.id)})
        return txn

    def void(self, transaction_id: UUID, actor_id: UUID) -> FinancialTransaction:
        """pending -> void.  Posted rows are reversed, never voided."""
        txn = self._load_for_update(transaction_id)
        if txn.status != TransactionStatus.PENDING:
            raise TransactionNotPendingError(txn.id, enum_value(txn.status))
        txn.status = TransactionStatus.VOID
        txn.voided_at = self.clock.now()
        txn.updated_by_id = actor_id
        self.session.flush()
        logger.info("journal_transaction_voided", extra={"transaction_id": str(txn.id)})
        return txn

    # -------------------------------------------------------------------------
    # Reverse
    # -------------------------------------------------------------------------

    def reverse(self, transaction_id: UUID, actor_id: UUID, reason: str) -> ReversalResult:
        """
        Reverse a posted transaction exactly once.

        Postconditions:
            - A new posted transaction exists with debit/credit swapped and
              the same amount and currency, ``reversal_of_id`` = original.
            - The original is ``reversed`` with ``reversed_by_id`` set.
        """
        original = self._load_for_update(transaction_id)
        if original.status == TransactionStatus.REVERSED or original.reversed_by_id is not None:
            raise EntryAlreadyReversedError(original.id)
        if original.status != TransactionStatus.POSTED:
            raise EntryNotPostedError(original.id, enum_value(original.status))

        now = self.clock.now()
        reversal = FinancialTransaction(
            sequence=self._sequence.next_value(SequenceSource.FINANCIAL_TRANSACTION),
            transaction_type=original.transaction_type,
            reference_type=ReferenceType.REVERSAL,
            reference_id=original.id,
            order_id=original.order_id,
            debit_account=original.credit_account,
            credit_account=original.debit_account,
            amount=original.amount,
            currency=original.currency,
            status=TransactionStatus.POSTED,
            description=f"Reversal: {reason}",
            posted_at=now,
            approved_by_id=actor_id,
            approved_at=now,
            reversal_of_id=original.id,
            reversal_reason=reason,
            created_by_id=actor_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reversal)
        # The reversal row must exist before the original can point at it.
        self.session.flush()

        original.status = TransactionStatus.REVERSED
        original.reversed_by_id = reversal.id
        original.reversal_reason = reason
        original.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "journal_transaction_reversed",
            extra={
                "original_id": str(original.id),
                "reversal_id": str(reversal.id),
                "amount": str(original.amount),
                "reason": reason,
            },
        )
        return ReversalResult(
            original_id=original.id,
            reversal_id=reversal.id,
            debit_account=reversal.debit_account,
            credit_account=reversal.credit_account,
            amount=reversal.amount,
            currency=reversal.currency,
        )

    def _load_for_update(self, transaction_id: UUID) -> FinancialTransaction:
        txn = self.session.execute(
            select(FinancialTransaction)
            .where(FinancialTransaction.id == transaction_id)
            .with_for_update()
        ).scalar_one_or_none()
        if txn is None:
            raise FinancialTransactionNotFoundError(transaction_id)
        return txn
