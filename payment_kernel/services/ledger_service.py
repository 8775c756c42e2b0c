"""
LedgerService -- the single write path into the Ledger Store.

Responsibility:
    Validates and appends ledger entries, pairs each one with its journal
    posting, and recomputes the order projection, all inside the caller's
    transaction.  Also moves pending entries to completed/failed in place
    (gateway confirmations) with the paired journal row following.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the refund, credit
    note and webhook modules; never calls them back.

Invariants enforced:
    - Payment, credit and fee entries are positive; refund-type and
      adjustment entries are stored negative; zero is rejected.
    - Amounts carry no more decimals than their currency allows.
    - Refund-type entries name the customer payment they return money from,
      and never take that payment below zero.
    - Original amount and currency are kept as recorded; base_amount is the
      settlement-currency value and requires an exchange rate when the
      currencies differ.
    - Every entry that is not failed on arrival has exactly one journal
      transaction, posted when the entry is completed and pending while the
      entry is pending.
    - The order row is locked before the entry is written; the projection
      is recomputed before returning.

Failure modes:
    - OrderNotFoundError, InvalidAmountError, InvalidCurrencyError,
      ExchangeRateRequiredError on write; nothing is persisted.
    - PaymentEntryNotRefundableError, RefundExceedsRefundableError when a
      refund entry points at the wrong payment or exceeds what is left on it.
    - InvalidTransitionError when a non-pending entry is transitioned.

Audit relevance:
    ``ledger_entry_written`` / ``ledger_entry_transitioned`` log events carry
    entry id, order id, amounts and the running balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from payment_config import PaymentConfig
from payment_kernel.db.types import (
    ZERO,
    currency_decimal_places,
    enum_value,
    require_minor_units,
    round_money,
    to_money,
    validate_currency,
)
from payment_kernel.domain.clock import Clock
from payment_kernel.domain.projection import signed_amount
from payment_kernel.exceptions import (
    ExchangeRateRequiredError,
    InvalidAmountError,
    InvalidTransitionError,
    LedgerEntryNotFoundError,
    PaymentEntryNotRefundableError,
    RefundExceedsRefundableError,
    ValidationError,
)
from payment_kernel.logging_config import get_logger
from payment_kernel.models.journal import ReferenceType, TransactionType
from payment_kernel.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from payment_kernel.services.base import BaseService
from payment_kernel.services.journal_service import JournalService
from payment_kernel.services.projection_service import ProjectionResult, ProjectionService
from payment_kernel.services.sequence_service import SequenceService, SequenceSource

logger = get_logger("services.ledger")


@dataclass(frozen=True)
class LedgerWriteResult:
    """What a caller learns from a ledger write or transition."""
    entry_id: UUID
    sequence: int
    status: LedgerEntryStatus
    amount: Decimal
    currency: str
    base_amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    financial_transaction_id: UUID | None
    projection: ProjectionResult

    @property
    def running_balance(self) -> Decimal:
        return self.balance_after


class LedgerService(BaseService):
    """
    Contract:
        ``write`` and ``transition`` leave ledger, journal and projection
        mutually consistent at flush time.

    Non-goals:
        - Does NOT commit.
        - Does NOT decide refund allocation or credit note balances.
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
        self.journal = JournalService(session, self.clock, self.config, self._sequence)
        self.projection = ProjectionService(session, self.clock, self.config)

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def write(
        self,
        *,
        order_id: UUID,
        entry_type: LedgerEntryType | str,
        amount: Decimal,
        currency: str,
        actor_id: UUID,
        status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED,
        payment_method: str | None = None,
        gateway_code: str | None = None,
        gateway_transaction_id: str | None = None,
        reference_number: str | None = None,
        exchange_rate: Decimal | None = None,
        base_amount: Decimal | None = None,
        idempotency_key: str | None = None,
        related_entry_id: UUID | None = None,
        notes: str | None = None,
        metadata: dict[str, Any] | None = None,
        accounts: tuple[str, str] | None = None,
    ) -> LedgerWriteResult:
        """
        Append one entry, its journal posting and the projection update.

        ``accounts`` overrides the configured (debit, credit) pair for this
        entry type; used for compensations whose direction differs from
        the entry type's default rule.  ``base_amount`` pins the
        settlement-currency value of a cross-currency entry (refunds carry
        the exact allocated amount) instead of deriving it from the rate.
        """
        entry_type = _parse_entry_type(entry_type)
        status = LedgerEntryStatus(status)
        currency = validate_currency(currency)
        stored_amount = self._signed(entry_type, require_minor_units(to_money(amount), currency))
        if entry_type.is_refund and related_entry_id is None:
            raise ValidationError(f"{entry_type.value} entries must name the refunded payment entry")

        order = self.projection.lock_order(order_id)
        rate, settled = self._settlement_amount(stored_amount, currency, order.currency, exchange_rate)
        if base_amount is not None and currency != order.currency:
            places = currency_decimal_places(order.currency)
            settled = self._signed(entry_type, round_money(to_money(base_amount), places))
        base_amount = settled
        if entry_type.is_refund and status != LedgerEntryStatus.FAILED:
            self._check_refundable(order_id, related_entry_id, -base_amount)

        balance_before = self.projection.amount_paid_from_ledger(order_id)
        balance_after = balance_before
        if status == LedgerEntryStatus.COMPLETED:
            balance_after = balance_before + signed_amount(entry_type, base_amount)

        now = self.clock.now()
        entry = LedgerEntry(
            id=uuid4(),
            order_id=order_id,
            sequence=self._sequence.next_value(SequenceSource.LEDGER_ENTRY),
            entry_type=entry_type,
            status=status,
            amount=stored_amount,
            currency=currency,
            exchange_rate=rate,
            base_amount=base_amount,
            payment_method=payment_method,
            gateway_code=gateway_code,
            gateway_transaction_id=gateway_transaction_id,
            reference_number=reference_number,
            idempotency_key=idempotency_key,
            related_entry_id=related_entry_id,
            balance_before=balance_before,
            balance_after=balance_after,
            recorded_at=now,
            completed_at=now if status == LedgerEntryStatus.COMPLETED else None,
            notes=notes,
            entry_metadata=metadata,
            created_by_id=actor_id,
            created_at=now,
            updated_at=now,
        )

        if status != LedgerEntryStatus.FAILED:
            txn = self._record_journal(entry, order_id, actor_id, accounts)
            entry.financial_transaction_id = txn.id
        self.session.add(entry)
        self.session.flush()

        projection = self.projection.recompute(order_id)

        logger.info(
            "ledger_entry_written",
            extra={
                "entry_id": str(entry.id),
                "order_id": str(order_id),
                "entry_type": entry_type.value,
                "status": status.value,
                "amount": str(stored_amount),
                "currency": currency,
                "base_amount": str(base_amount),
                "balance_after": str(balance_after),
            },
        )
        return self._result(entry, projection)

    # -------------------------------------------------------------------------
    # Transition
    # -------------------------------------------------------------------------

    def transition(
        self,
        entry_id: UUID,
        new_status: LedgerEntryStatus,
        actor_id: UUID,
        *,
        gateway_transaction_id: str | None = None,
    ) -> LedgerWriteResult:
        """
        Move a pending entry to completed or failed.

        Completion posts the paired journal transaction and snapshots the
        running balance; failure voids it.  Both recompute the projection.
        """
        new_status = LedgerEntryStatus(new_status)
        entry = self._load_for_update(entry_id)
        if entry.status != LedgerEntryStatus.PENDING or new_status == LedgerEntryStatus.PENDING:
            raise InvalidTransitionError("ledger_entry", enum_value(entry.status), new_status.value)

        self.projection.lock_order(entry.order_id)
        now = self.clock.now()
        if gateway_transaction_id and not entry.gateway_transaction_id:
            entry.gateway_transaction_id = gateway_transaction_id

        if new_status == LedgerEntryStatus.COMPLETED:
            before = self.projection.amount_paid_from_ledger(entry.order_id)
            entry.balance_before = before
            entry.balance_after = before + signed_amount(entry.entry_type, Decimal(entry.base_amount))
            entry.completed_at = now
            if entry.financial_transaction_id is not None:
                self.journal.post(entry.financial_transaction_id, actor_id)
        elif entry.financial_transaction_id is not None:
            self.journal.void(entry.financial_transaction_id, actor_id)

        entry.status = new_status
        entry.updated_by_id = actor_id
        entry.updated_at = now
        self.session.flush()

        projection = self.projection.recompute(entry.order_id)
        logger.info(
            "ledger_entry_transitioned",
            extra={
                "entry_id": str(entry.id),
                "order_id": str(entry.order_id),
                "status": new_status.value,
                "balance_after": str(entry.balance_after),
            },
        )
        return self._result(entry, projection)

    # -------------------------------------------------------------------------
    # Reads used by writers
    # -------------------------------------------------------------------------

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        entry = self.session.get(LedgerEntry, entry_id)
        if entry is None:
            raise LedgerEntryNotFoundError(entry_id)
        return entry

    def find_by_idempotency_key(self, key: str) -> LedgerEntry | None:
        return self.session.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == key)
        ).scalar_one_or_none()

    def history(self, order_id: UUID) -> list[LedgerEntry]:
        """All entries for an order, oldest first."""
        self.projection.get_order(order_id)
        return list(
            self.session.execute(
                select(LedgerEntry)
                .where(LedgerEntry.order_id == order_id)
                .order_by(LedgerEntry.created_at, LedgerEntry.sequence)
            ).scalars()
        )

    def payment_entries_newest_first(self, order_id: UUID) -> list[LedgerEntry]:
        """Completed customer payments, newest first (refund allocation order)."""
        return list(
            self.session.execute(
                select(LedgerEntry)
                .where(
                    LedgerEntry.order_id == order_id,
                    LedgerEntry.entry_type == LedgerEntryType.CUSTOMER_PAYMENT.value,
                    LedgerEntry.status == LedgerEntryStatus.COMPLETED.value,
                )
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.sequence.desc())
            ).scalars()
        )

    def refunded_by_payment(self, payment_entry_ids: list[UUID]) -> dict[UUID, Decimal]:
        """
        Settlement-currency amount already refunded against each payment,
        as a positive figure.  Pending refund entries count; failed ones do not.
        """
        if not payment_entry_ids:
            return {}
        rows = self.session.execute(
            select(LedgerEntry.related_entry_id, func.sum(LedgerEntry.base_amount))
            .where(
                LedgerEntry.related_entry_id.in_(payment_entry_ids),
                LedgerEntry.entry_type.in_(
                    [LedgerEntryType.REFUND.value, LedgerEntryType.PARTIAL_REFUND.value]
                ),
                LedgerEntry.status != LedgerEntryStatus.FAILED.value,
            )
            .group_by(LedgerEntry.related_entry_id)
        ).all()
        return {entry_id: -Decimal(total) for entry_id, total in rows}

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _signed(entry_type: LedgerEntryType, amount: Decimal) -> Decimal:
        if amount == ZERO:
            raise InvalidAmountError(amount, "amount must be non-zero")
        if entry_type.is_negative:
            return -abs(amount)
        if amount < ZERO:
            raise InvalidAmountError(amount, f"{entry_type.value} amount must be positive")
        return amount

    @staticmethod
    def _settlement_amount(
        amount: Decimal,
        currency: str,
        settlement_currency: str,
        exchange_rate: Decimal | None,
    ) -> tuple[Decimal, Decimal]:
        if currency == settlement_currency:
            return Decimal("1"), amount
        if exchange_rate is None:
            raise ExchangeRateRequiredError(currency, settlement_currency)
        rate = to_money(exchange_rate)
        if rate <= ZERO:
            raise InvalidAmountError(rate, "exchange rate must be positive")
        return rate, round_money(amount * rate, currency_decimal_places(settlement_currency))

    def _check_refundable(self, order_id: UUID, payment_entry_id: UUID, amount: Decimal) -> None:
        """A refund entry may not take a payment below zero."""
        payment = self.session.get(LedgerEntry, payment_entry_id)
        if (
            payment is None
            or payment.order_id != order_id
            or enum_value(payment.entry_type) != LedgerEntryType.CUSTOMER_PAYMENT.value
            or enum_value(payment.status) != LedgerEntryStatus.COMPLETED.value
        ):
            raise PaymentEntryNotRefundableError(
                payment_entry_id, "not a completed customer payment of this order",
            )
        remaining = Decimal(payment.base_amount) - self.refunded_by_payment([payment.id]).get(payment.id, ZERO)
        if amount > remaining:
            raise RefundExceedsRefundableError(order_id, amount, max(remaining, ZERO))

    def _record_journal(
        self,
        entry: LedgerEntry,
        order_id: UUID,
        actor_id: UUID,
        accounts: tuple[str, str] | None,
    ):
        post_now = entry.status == LedgerEntryStatus.COMPLETED
        description = f"{entry.entry_type.value} for order {order_id}"
        if accounts is None:
            return self.journal.record_for_rule(
                entry.entry_type.value,
                gateway=entry.gateway_code,
                amount=abs(entry.amount),
                currency=entry.currency,
                reference_type=ReferenceType.LEDGER_ENTRY,
                reference_id=entry.id,
                actor_id=actor_id,
                order_id=order_id,
                description=description,
                post_immediately=post_now,
            )
        debit, credit = accounts
        rule = self.config.posting_rule(entry.entry_type.value)
        return self.journal.record(
            debit_account=debit,
            credit_account=credit,
            amount=abs(entry.amount),
            currency=entry.currency,
            transaction_type=TransactionType(rule.transaction_type),
            reference_type=ReferenceType.LEDGER_ENTRY,
            reference_id=entry.id,
            actor_id=actor_id,
            order_id=order_id,
            description=description,
            metadata={"posting_rule": "override"},
            post_immediately=post_now,
        )

    def _load_for_update(self, entry_id: UUID) -> LedgerEntry:
        entry = self.session.execute(
            select(LedgerEntry).where(LedgerEntry.id == entry_id).with_for_update()
        ).scalar_one_or_none()
        if entry is None:
            raise LedgerEntryNotFoundError(entry_id)
        return entry

    @staticmethod
    def _result(entry: LedgerEntry, projection: ProjectionResult) -> LedgerWriteResult:
        return LedgerWriteResult(
            entry_id=entry.id,
            sequence=entry.sequence,
            status=LedgerEntryStatus(entry.status),
            amount=Decimal(entry.amount),
            currency=entry.currency,
            base_amount=Decimal(entry.base_amount),
            balance_before=Decimal(entry.balance_before),
            balance_after=Decimal(entry.balance_after),
            financial_transaction_id=entry.financial_transaction_id,
            projection=projection,
        )


def _parse_entry_type(value: LedgerEntryType | str) -> LedgerEntryType:
    try:
        return LedgerEntryType(value)
    except ValueError:
        raise ValidationError(f"Unknown ledger entry type {value!r}") from None
