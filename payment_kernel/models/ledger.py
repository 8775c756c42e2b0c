"""
Module: payment_kernel.models.ledger
Responsibility: ORM persistence for the Ledger Store -- one row per money
    movement against an order, in the movement's original currency.
Architecture position: Kernel > Models.

Invariants enforced:
    - A completed entry is never mutated (db/immutability.py); corrections
      are new entries.  No entry is ever deleted.
    - Refund-type and adjustment entries are stored negative; payment,
      credit and fee entries positive (LedgerService.write).
    - base_amount is the amount in the order's settlement currency and is
      what the projection sums.
    - idempotency_key is unique, so a gateway event can create at most one
      entry.

Audit relevance:
    balance_before / balance_after snapshot the order's amount paid around
    the entry; sequence gives a total order for history reads.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from payment_kernel.models.order import Order


class LedgerEntryType(str, Enum):
    CUSTOMER_PAYMENT = "customer_payment"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    CREDIT_APPLIED = "credit_applied"
    ADJUSTMENT = "adjustment"
    GATEWAY_FEE = "gateway_fee"

    @property
    def is_refund(self) -> bool:
        return self in (LedgerEntryType.REFUND, LedgerEntryType.PARTIAL_REFUND)

    @property
    def is_negative(self) -> bool:
        return self.is_refund or self == LedgerEntryType.ADJUSTMENT


class LedgerEntryStatus(str, Enum):
    """pending -> completed | failed.  completed and failed are final."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerEntry(TrackedBase):
    """A single recorded money movement against an order."""

    __tablename__ = "payment_ledger"

    __table_args__ = (
        UniqueConstraint("sequence", name="uq_payment_ledger_sequence"),
        UniqueConstraint("idempotency_key", name="uq_payment_ledger_idempotency_key"),
        Index("idx_payment_ledger_order", "order_id", "sequence"),
        Index("idx_payment_ledger_method_date", "payment_method", "recorded_at"),
        Index("idx_payment_ledger_gateway_txn", "gateway_transaction_id"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False,
    )

    # Monotonic position across the whole ledger
    sequence: Mapped[int] = mapped_column(nullable=False)

    entry_type: Mapped[LedgerEntryType] = mapped_column(String(30), nullable=False)

    status: Mapped[LedgerEntryStatus] = mapped_column(
        String(20), default=LedgerEntryStatus.PENDING, nullable=False,
    )

    # Original amount and currency
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # entry currency -> settlement currency
    exchange_rate: Mapped[Decimal] = mapped_column(
        Numeric(38, 18), default=Decimal("1"), nullable=False,
    )

    base_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)

    gateway_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    gateway_transaction_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    reference_number: Mapped[str | None] = mapped_column(String(200), nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # Payment entry this entry compensates (refunds)
    related_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("payment_ledger.id"), nullable=True,
    )

    financial_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("financial_transactions.id"), nullable=True,
    )

    balance_before: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    balance_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    entry_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )

    order: Mapped["Order"] = relationship(viewonly=True)

    def __repr__(self) -> str:
        return f"<LedgerEntry #{self.sequence} {self.entry_type} {self.amount} {self.currency} {self.status}>"
