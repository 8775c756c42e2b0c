"""
Refund ORM Models (``payment_modules.refunds.orm``).

Responsibility
--------------
SQLAlchemy persistence for refund requests and their items.  Maps the
frozen DTOs from ``models.py`` to the ``refund_requests`` and
``refund_items`` tables.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``payment_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``payment_kernel``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_kernel.db.base import TrackedBase
from payment_modules.refunds.models import (
    RefundItemInfo,
    RefundItemStatus,
    RefundMethod,
    RefundReason,
    RefundRequestInfo,
    RefundRequestStatus,
    RefundType,
)


# ---------------------------------------------------------------------------
# RefundRequestModel
# ---------------------------------------------------------------------------

class RefundRequestModel(TrackedBase):
    """
    ORM model for ``RefundRequestInfo``.

    Table: ``refund_requests``
    """

    __tablename__ = "refund_requests"

    request_number: Mapped[str] = mapped_column(String(30))
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"))
    refund_type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(30), default=RefundRequestStatus.PENDING.value)
    requested_amount: Mapped[Decimal]
    approved_amount: Mapped[Decimal | None]
    currency: Mapped[str] = mapped_column(String(3))
    reason_code: Mapped[str] = mapped_column(String(50))
    reason_description: Mapped[str | None] = mapped_column(String(1000))
    refund_method: Mapped[str] = mapped_column(String(50))
    customer_notes: Mapped[str | None] = mapped_column(String(2000))
    internal_notes: Mapped[str | None] = mapped_column(String(2000))
    requested_by_id: Mapped[UUID]
    requested_at: Mapped[datetime]
    reviewed_by_id: Mapped[UUID | None]
    reviewed_at: Mapped[datetime | None]
    rejection_reason: Mapped[str | None] = mapped_column(String(1000))
    processed_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]
    cancelled_at: Mapped[datetime | None]
    cancellation_reason: Mapped[str | None] = mapped_column(String(1000))

    items: Mapped[list["RefundItemModel"]] = relationship(
        back_populates="request",
        order_by="RefundItemModel.allocation_order",
    )

    __table_args__ = (
        UniqueConstraint("request_number", name="uq_refund_requests_number"),
        Index("idx_refund_requests_order", "order_id"),
        Index("idx_refund_requests_status", "status"),
    )

    def to_dto(self) -> RefundRequestInfo:
        return RefundRequestInfo(
            id=self.id,
            request_number=self.request_number,
            order_id=self.order_id,
            refund_type=RefundType(self.refund_type),
            status=RefundRequestStatus(self.status),
            requested_amount=self.requested_amount,
            approved_amount=self.approved_amount,
            currency=self.currency,
            reason_code=RefundReason(self.reason_code),
            refund_method=RefundMethod(self.refund_method),
            requested_by_id=self.requested_by_id,
            items=tuple(item.to_dto() for item in self.items),
        )

    def __repr__(self) -> str:
        return (
            f"<RefundRequestModel(number={self.request_number!r}, "
            f"status={self.status!r}, requested={self.requested_amount})>"
        )


# ---------------------------------------------------------------------------
# RefundItemModel
# ---------------------------------------------------------------------------

class RefundItemModel(TrackedBase):
    """
    ORM model for ``RefundItemInfo`` -- one allocation against a payment
    ledger entry.

    Table: ``refund_items``
    """

    __tablename__ = "refund_items"

    refund_request_id: Mapped[UUID] = mapped_column(ForeignKey("refund_requests.id"))
    payment_entry_id: Mapped[UUID] = mapped_column(ForeignKey("payment_ledger.id"))
    allocation_order: Mapped[int]
    allocated_amount: Mapped[Decimal]
    currency: Mapped[str] = mapped_column(String(3))
    payment_amount: Mapped[Decimal]
    payment_currency: Mapped[str] = mapped_column(String(3))
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(38, 18))
    gateway_code: Mapped[str | None] = mapped_column(String(50))
    payment_method: Mapped[str | None] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), default=RefundItemStatus.PENDING.value)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(200))
    gateway_response: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    failure_reason: Mapped[str | None] = mapped_column(String(1000))
    attempts: Mapped[int] = mapped_column(default=0)
    refund_entry_id: Mapped[UUID | None] = mapped_column(ForeignKey("payment_ledger.id"))
    financial_transaction_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("financial_transactions.id"),
    )
    processed_at: Mapped[datetime | None]

    request: Mapped["RefundRequestModel"] = relationship(back_populates="items")

    __table_args__ = (
        Index("idx_refund_items_request", "refund_request_id"),
        Index("idx_refund_items_payment_entry", "payment_entry_id", "status"),
    )

    def to_dto(self) -> RefundItemInfo:
        return RefundItemInfo(
            id=self.id,
            refund_request_id=self.refund_request_id,
            payment_entry_id=self.payment_entry_id,
            allocation_order=self.allocation_order,
            allocated_amount=self.allocated_amount,
            currency=self.currency,
            payment_amount=self.payment_amount,
            payment_currency=self.payment_currency,
            exchange_rate=self.exchange_rate,
            gateway_code=self.gateway_code,
            status=RefundItemStatus(self.status),
            gateway_refund_id=self.gateway_refund_id,
            refund_entry_id=self.refund_entry_id,
            failure_reason=self.failure_reason,
            attempts=self.attempts,
            processed_at=self.processed_at,
        )

    def __repr__(self) -> str:
        return (
            f"<RefundItemModel(order={self.allocation_order}, "
            f"allocated={self.allocated_amount}, status={self.status!r})>"
        )
