"""
Webhook ORM Models (``payment_modules.webhooks.orm``).

Responsibility
--------------
SQLAlchemy persistence for gateway payment transactions, guest checkout
sessions and the order records created once a payment is confirmed.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``payment_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``payment_kernel``.

Invariants enforced
-------------------
* ``payment_transactions.idempotency_key`` is unique: concurrent
  deliveries of one event cannot both insert.
* ``placed_orders.payment_transaction_id`` is unique: one order record
  per confirmed payment.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from payment_kernel.db.base import TrackedBase
from payment_modules.webhooks.models import (
    GuestCheckoutSessionInfo,
    GuestSessionStatus,
    PaymentTransactionInfo,
    PaymentTransactionStatus,
    PlacedOrderInfo,
    PlacedOrderStatus,
    response_from_metadata,
)


# ---------------------------------------------------------------------------
# PaymentTransactionModel
# ---------------------------------------------------------------------------

class PaymentTransactionModel(TrackedBase):
    """
    ORM model for ``PaymentTransactionInfo``.

    Table: ``payment_transactions``
    """

    __tablename__ = "payment_transactions"

    idempotency_key: Mapped[str] = mapped_column(String(200))
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"))
    transaction_id: Mapped[str | None] = mapped_column(String(200))
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(200))
    amount: Mapped[Decimal]
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default=PaymentTransactionStatus.PENDING.value)
    payment_method: Mapped[str | None] = mapped_column(String(50))
    gateway_code: Mapped[str | None] = mapped_column(String(50))
    gateway_response: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    ledger_entry_id: Mapped[UUID | None] = mapped_column(ForeignKey("payment_ledger.id"))
    event_count: Mapped[int] = mapped_column(default=1)
    last_event_at: Mapped[datetime]
    completed_at: Mapped[datetime | None]
    failed_at: Mapped[datetime | None]

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_payment_transactions_idempotency_key"),
        Index("idx_payment_transactions_order", "order_id"),
    )

    def to_dto(self) -> PaymentTransactionInfo:
        return PaymentTransactionInfo(
            id=self.id,
            idempotency_key=self.idempotency_key,
            order_id=self.order_id,
            transaction_id=self.transaction_id,
            gateway_transaction_id=self.gateway_transaction_id,
            amount=self.amount,
            currency=self.currency,
            status=PaymentTransactionStatus(self.status),
            payment_method=self.payment_method,
            gateway_code=self.gateway_code,
            ledger_entry_id=self.ledger_entry_id,
            event_count=self.event_count,
            gateway_response=response_from_metadata(self.gateway_response),
            completed_at=self.completed_at,
        )

    def __repr__(self) -> str:
        return f"<PaymentTransactionModel({self.idempotency_key!r}, {self.amount} {self.currency}, {self.status!r})>"


# ---------------------------------------------------------------------------
# GuestCheckoutSessionModel
# ---------------------------------------------------------------------------

class GuestCheckoutSessionModel(TrackedBase):
    """
    ORM model for ``GuestCheckoutSessionInfo``.

    Holds guest contact and shipping details until the payment resolves,
    so an abandoned checkout never touches the order.

    Table: ``guest_checkout_sessions``
    """

    __tablename__ = "guest_checkout_sessions"

    session_token: Mapped[str] = mapped_column(String(100))
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"))
    guest_name: Mapped[str] = mapped_column(String(200))
    guest_email: Mapped[str] = mapped_column(String(320))
    guest_phone: Mapped[str | None] = mapped_column(String(50))
    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    payment_currency: Mapped[str] = mapped_column(String(3))
    payment_method: Mapped[str] = mapped_column(String(50))
    payment_amount: Mapped[Decimal]
    status: Mapped[str] = mapped_column(String(20), default=GuestSessionStatus.ACTIVE.value)
    expires_at: Mapped[datetime]
    resolved_at: Mapped[datetime | None]
    payment_transaction_id: Mapped[UUID | None] = mapped_column(ForeignKey("payment_transactions.id"))

    __table_args__ = (
        UniqueConstraint("session_token", name="uq_guest_checkout_sessions_token"),
        Index("idx_guest_checkout_sessions_status_expiry", "status", "expires_at"),
    )

    def to_dto(self) -> GuestCheckoutSessionInfo:
        return GuestCheckoutSessionInfo(
            id=self.id,
            session_token=self.session_token,
            order_id=self.order_id,
            guest_name=self.guest_name,
            guest_email=self.guest_email,
            guest_phone=self.guest_phone,
            payment_currency=self.payment_currency,
            payment_method=self.payment_method,
            payment_amount=self.payment_amount,
            status=GuestSessionStatus(self.status),
            expires_at=self.expires_at,
            payment_transaction_id=self.payment_transaction_id,
            shipping_address=self.shipping_address,
        )


# ---------------------------------------------------------------------------
# PlacedOrderModel
# ---------------------------------------------------------------------------

class PlacedOrderModel(TrackedBase):
    """
    ORM model for ``PlacedOrderInfo``.

    Table: ``placed_orders``
    """

    __tablename__ = "placed_orders"

    order_number: Mapped[str] = mapped_column(String(30))
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"))
    payment_transaction_id: Mapped[UUID] = mapped_column(ForeignKey("payment_transactions.id"))
    total_amount: Mapped[Decimal]
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default=PlacedOrderStatus.CONFIRMED.value)
    payment_method: Mapped[str | None] = mapped_column(String(50))
    customer_email: Mapped[str | None] = mapped_column(String(320))
    customer_name: Mapped[str | None] = mapped_column(String(200))
    customer_phone: Mapped[str | None] = mapped_column(String(50))

    __table_args__ = (
        UniqueConstraint("order_number", name="uq_placed_orders_number"),
        UniqueConstraint("payment_transaction_id", name="uq_placed_orders_payment_transaction"),
    )

    def to_dto(self) -> PlacedOrderInfo:
        return PlacedOrderInfo(
            id=self.id,
            order_number=self.order_number,
            order_id=self.order_id,
            payment_transaction_id=self.payment_transaction_id,
            total_amount=self.total_amount,
            currency=self.currency,
            status=PlacedOrderStatus(self.status),
            payment_method=self.payment_method,
            customer_email=self.customer_email,
            customer_name=self.customer_name,
            customer_phone=self.customer_phone,
        )
