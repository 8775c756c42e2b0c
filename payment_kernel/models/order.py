"""
Module: payment_kernel.models.order
Responsibility: Local mirror of an order owned by the Order/Quote service,
    carrying the Order Payment Projection fields.
Architecture position: Kernel > Models.

Invariants enforced:
    - amount_paid, payment_status, overpayment_amount and paid_at are written
      only by ProjectionService.recompute; nothing else assigns them.
    - amount_paid equals the signed sum of the order's completed ledger
      entries in the settlement currency.

Failure modes:
    - requires_review is raised (not an exception) when the ledger sum cannot
      map to a valid status.
"""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_kernel.db.base import TrackedBase, UUIDString
from payment_kernel.domain.projection import PaymentStatus

if TYPE_CHECKING:
    from payment_kernel.models.ledger import LedgerEntry


class Order(TrackedBase):
    """An order as seen by the payment engine."""

    __tablename__ = "orders"

    __table_args__ = (
        UniqueConstraint("order_reference", name="uq_orders_order_reference"),
        Index("idx_orders_customer", "customer_id"),
        Index("idx_orders_payment_status", "payment_status"),
    )

    # Business reference from the Order service (quote number)
    order_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # None for guest checkouts
    customer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    guest_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    total_owed: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Projection fields
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=Decimal("0"), nullable=False,
    )

    payment_status: Mapped[PaymentStatus] = mapped_column(
        String(20), default=PaymentStatus.UNPAID, nullable=False,
    )

    overpayment_amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=Decimal("0"), nullable=False,
    )

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    requires_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    review_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    ledger_entries: Mapped[list["LedgerEntry"]] = relationship(
        order_by="LedgerEntry.sequence",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.payment_status} {self.amount_paid}/{self.total_owed} {self.currency}>"

    @property
    def unpaid_balance(self) -> Decimal:
        balance = Decimal(self.total_owed) - Decimal(self.amount_paid or 0)
        return balance if balance > 0 else Decimal("0")
