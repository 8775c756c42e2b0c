"""
Module: payment_kernel.selectors.ledger_selector
Responsibility: Read-only queries over the Ledger Store: per-order history,
    per-order totals by entry type, and scoped range reads for
    reconciliation.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - History is ordered by (created_at, sequence); sequence is a total
      order, so paging with ``after_sequence`` is restartable and finite.
    - Totals are derived from completed entries at query time; nothing here
      reads the stored projection.

Failure modes:
    - Returns empty results when no entries match (never raises on absence).
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from payment_kernel.db.types import ZERO, enum_value
from payment_kernel.domain.projection import signed_amount
from payment_kernel.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from payment_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LedgerEntryDTO:
    """Data transfer object for a ledger entry."""

    id: UUID
    order_id: UUID
    sequence: int
    entry_type: str
    status: str
    amount: Decimal
    currency: str
    exchange_rate: Decimal
    base_amount: Decimal
    payment_method: str | None
    gateway_code: str | None
    gateway_transaction_id: str | None
    reference_number: str | None
    related_entry_id: UUID | None
    financial_transaction_id: UUID | None
    balance_before: Decimal
    balance_after: Decimal
    recorded_at: datetime
    completed_at: datetime | None
    created_by_id: UUID
    metadata: dict[str, Any] | None

    @property
    def signed_base_amount(self) -> Decimal:
        return signed_amount(self.entry_type, self.base_amount)


@dataclass(frozen=True)
class LedgerTotals:
    """Completed-entry totals for one order, in settlement currency."""

    order_id: UUID
    payments: Decimal
    refunds: Decimal
    credits_applied: Decimal
    adjustments: Decimal
    gateway_fees: Decimal
    entry_count: int

    @property
    def net_paid(self) -> Decimal:
        """Same figure the projection stores as amount paid."""
        return self.payments + self.credits_applied - self.refunds - self.adjustments


def _to_dto(entry: LedgerEntry) -> LedgerEntryDTO:
    return LedgerEntryDTO(
        id=entry.id,
        order_id=entry.order_id,
        sequence=entry.sequence,
        entry_type=enum_value(entry.entry_type),
        status=enum_value(entry.status),
        amount=Decimal(entry.amount),
        currency=entry.currency,
        exchange_rate=Decimal(entry.exchange_rate),
        base_amount=Decimal(entry.base_amount),
        payment_method=entry.payment_method,
        gateway_code=entry.gateway_code,
        gateway_transaction_id=entry.gateway_transaction_id,
        reference_number=entry.reference_number,
        related_entry_id=entry.related_entry_id,
        financial_transaction_id=entry.financial_transaction_id,
        balance_before=Decimal(entry.balance_before),
        balance_after=Decimal(entry.balance_after),
        recorded_at=entry.recorded_at,
        completed_at=entry.completed_at,
        created_by_id=entry.created_by_id,
        metadata=entry.entry_metadata,
    )


def day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Half-open UTC datetime range covering the calendar days start..end."""
    lower = datetime.combine(start, time.min, tzinfo=UTC)
    upper = datetime.combine(end + timedelta(days=1), time.min, tzinfo=UTC)
    return lower, upper


class LedgerSelector(BaseSelector[LedgerEntry]):
    """
    Selector for Ledger Store reads.

    Guarantees:
        - All amounts are Decimal.
        - DTOs are detached from the session.
    """

    def get(self, entry_id: UUID) -> LedgerEntryDTO | None:
        entry = self.session.get(LedgerEntry, entry_id)
        return _to_dto(entry) if entry is not None else None

    def history(
        self,
        order_id: UUID,
        *,
        after_sequence: int | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntryDTO]:
        """
        Entries for an order, oldest first.

        Pass the last seen ``sequence`` as ``after_sequence`` to resume.
        """
        query = select(LedgerEntry).where(LedgerEntry.order_id == order_id)
        if after_sequence is not None:
            query = query.where(LedgerEntry.sequence > after_sequence)
        query = query.order_by(LedgerEntry.created_at, LedgerEntry.sequence)
        if limit is not None:
            query = query.limit(limit)
        return [_to_dto(e) for e in self.session.execute(query).scalars()]

    def by_gateway_transaction_id(self, gateway_transaction_id: str) -> list[LedgerEntryDTO]:
        rows = self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.gateway_transaction_id == gateway_transaction_id)
            .order_by(LedgerEntry.sequence)
        ).scalars()
        return [_to_dto(e) for e in rows]

    def totals(self, order_id: UUID) -> LedgerTotals:
        """Completed totals per entry type, as positive magnitudes."""
        buckets = {t.value: ZERO for t in LedgerEntryType}
        count = 0
        rows = self.session.execute(
            select(LedgerEntry.entry_type, LedgerEntry.base_amount)
            .where(
                LedgerEntry.order_id == order_id,
                LedgerEntry.status == LedgerEntryStatus.COMPLETED.value,
            )
        ).all()
        for entry_type, base_amount in rows:
            buckets[enum_value(entry_type)] += abs(Decimal(base_amount))
            count += 1
        return LedgerTotals(
            order_id=order_id,
            payments=buckets[LedgerEntryType.CUSTOMER_PAYMENT.value],
            refunds=buckets[LedgerEntryType.REFUND.value] + buckets[LedgerEntryType.PARTIAL_REFUND.value],
            credits_applied=buckets[LedgerEntryType.CREDIT_APPLIED.value],
            adjustments=buckets[LedgerEntryType.ADJUSTMENT.value],
            gateway_fees=buckets[LedgerEntryType.GATEWAY_FEE.value],
            entry_count=count,
        )

    def entries_in_range(
        self,
        *,
        start: date,
        end: date,
        payment_method: str | None = None,
        gateway_code: str | None = None,
        completed_only: bool = True,
    ) -> list[LedgerEntryDTO]:
        """Entries recorded on the calendar days ``start..end`` for a payment scope."""
        lower, upper = day_bounds(start, end)
        query = select(LedgerEntry).where(
            LedgerEntry.recorded_at >= lower,
            LedgerEntry.recorded_at < upper,
        )
        if payment_method is not None:
            query = query.where(LedgerEntry.payment_method == payment_method)
        if gateway_code is not None:
            query = query.where(LedgerEntry.gateway_code == gateway_code)
        if completed_only:
            query = query.where(LedgerEntry.status == LedgerEntryStatus.COMPLETED.value)
        query = query.order_by(LedgerEntry.recorded_at, LedgerEntry.sequence)
        return [_to_dto(e) for e in self.session.execute(query).scalars()]
