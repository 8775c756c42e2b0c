"""
ProjectionService -- the Order Payment Projection.

Responsibility:
    Registers the local order mirror and recomputes amount paid, payment
    status, overpayment and paid-at from the Ledger Store.  Recomputation is
    an explicit application step: LedgerService calls ``recompute`` inside
    the same transaction as every ledger insert or status change, so the
    projection can never lag the ledger it summarizes.

Architecture position:
    Kernel > Services.  Pure classification lives in domain/projection.py.

Invariants enforced:
    - amount_paid = signed sum of completed entries' base amounts.
    - Idempotent: recomputing with no ledger change writes identical values
      and reports ``changed=False``.
    - The order row is locked (FOR UPDATE) before it is read for a write,
      serializing concurrent writers on the same order.

Failure modes:
    - OrderNotFoundError for unknown orders.
    - CurrencyMismatchError when re-registering an order with ledger history
      under a different currency.
    - An impossible (negative) ledger sum is NOT raised: the order is flagged
      ``requires_review`` and a warning is logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from payment_kernel.db.types import ZERO, enum_value, to_money, validate_currency
from payment_kernel.domain.projection import (
    PaymentClassification,
    PaymentStatus,
    classify,
    sum_completed,
)
from payment_kernel.exceptions import CurrencyMismatchError, InvalidAmountError, OrderNotFoundError
from payment_kernel.logging_config import get_logger
from payment_kernel.models.ledger import LedgerEntry
from payment_kernel.models.order import Order
from payment_kernel.services.base import BaseService

logger = get_logger("services.projection")


@dataclass(frozen=True)
class ProjectionResult:
    order_id: UUID
    payment_status: PaymentStatus
    amount_paid: Decimal
    total_owed: Decimal
    overpayment_amount: Decimal
    paid_at: datetime | None
    requires_review: bool
    changed: bool


class ProjectionService(BaseService):
    """
    Contract:
        The only writer of the projection fields on ``Order``.
    """

    # -------------------------------------------------------------------------
    # Order mirror
    # -------------------------------------------------------------------------

    def register_order(
        self,
        *,
        order_id: UUID,
        total_owed: Decimal,
        currency: str,
        actor_id: UUID,
        customer_id: UUID | None = None,
        order_reference: str | None = None,
        guest_email: str | None = None,
    ) -> Order:
        """Insert or refresh the local copy of an order from the Order service."""
        total_owed = to_money(total_owed)
        if total_owed < ZERO:
            raise InvalidAmountError(total_owed, "total owed cannot be negative")
        currency = validate_currency(currency)

        order = self.session.get(Order, order_id, with_for_update=True)
        if order is None:
            order = Order(
                id=order_id,
                order_reference=order_reference,
                customer_id=customer_id,
                guest_email=guest_email,
                total_owed=total_owed,
                currency=currency,
                amount_paid=ZERO,
                payment_status=PaymentStatus.UNPAID,
                overpayment_amount=ZERO,
                requires_review=False,
                created_by_id=actor_id,
            )
            self.session.add(order)
            self.session.flush()
            logger.info(
                "order_registered",
                extra={"order_id": str(order_id), "total_owed": str(total_owed), "currency": currency},
            )
            return order

        if order.currency != currency and self._entry_count(order_id) > 0:
            raise CurrencyMismatchError(order.currency, currency)
        order.currency = currency
        order.customer_id = customer_id if customer_id is not None else order.customer_id
        order.order_reference = order_reference or order.order_reference
        order.guest_email = guest_email or order.guest_email
        order.updated_by_id = actor_id
        if Decimal(order.total_owed) != total_owed:
            order.total_owed = total_owed
            self.session.flush()
            self.recompute(order_id)
        self.session.flush()
        return order

    def update_total_owed(self, order_id: UUID, total_owed: Decimal, actor_id: UUID) -> ProjectionResult:
        """Apply a new total from the Order service and reclassify."""
        total_owed = to_money(total_owed)
        if total_owed < ZERO:
            raise InvalidAmountError(total_owed, "total owed cannot be negative")
        order = self.lock_order(order_id)
        order.total_owed = total_owed
        order.updated_by_id = actor_id
        self.session.flush()
        return self.recompute(order_id)

    def get_order(self, order_id: UUID) -> Order:
        order = self.session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def lock_order(self, order_id: UUID) -> Order:
        """Load the order with a row lock held until the transaction ends."""
        order = self.session.get(Order, order_id, with_for_update=True)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    # -------------------------------------------------------------------------
    # Recomputation
    # -------------------------------------------------------------------------

    def amount_paid_from_ledger(self, order_id: UUID) -> Decimal:
        """Signed sum of completed entries, read from the Ledger Store."""
        rows = self.session.execute(
            select(LedgerEntry.entry_type, LedgerEntry.status, LedgerEntry.base_amount)
            .where(LedgerEntry.order_id == order_id)
        ).all()
        return sum_completed((r.entry_type, r.status, Decimal(r.base_amount)) for r in rows)

    def recompute(self, order_id: UUID) -> ProjectionResult:
        """
        Recompute and persist the projection for one order.

        Postconditions:
            - Order fields reflect the current ledger.
            - paid_at is stamped on the first transition into paid/overpaid
              and cleared when the order falls back below paid.
        """
        order = self.lock_order(order_id)
        paid = self.amount_paid_from_ledger(order_id)
        result = classify(Decimal(order.total_owed), paid, self.config.tolerances.payment)

        before = _snapshot(order)
        self._apply(order, result)
        after = _snapshot(order)
        changed = before != after
        if changed:
            self.session.flush()

        if result.requires_review:
            logger.warning(
                "projection_requires_review",
                extra={"order_id": str(order_id), "amount_paid": str(paid), "reason": result.review_reason},
            )
        elif changed:
            logger.info(
                "projection_recomputed",
                extra={
                    "order_id": str(order_id),
                    "payment_status": result.status,
                    "amount_paid": str(paid),
                    "total_owed": str(order.total_owed),
                },
            )

        return ProjectionResult(
            order_id=order.id,
            payment_status=result.status,
            amount_paid=paid,
            total_owed=Decimal(order.total_owed),
            overpayment_amount=result.overpayment_amount,
            paid_at=order.paid_at,
            requires_review=result.requires_review,
            changed=changed,
        )

    def _apply(self, order: Order, result: PaymentClassification) -> None:
        order.amount_paid = result.amount_paid
        order.payment_status = result.status
        order.overpayment_amount = result.overpayment_amount
        order.requires_review = result.requires_review
        order.review_reason = result.review_reason
        if result.is_settled:
            if order.paid_at is None:
                order.paid_at = self.clock.now()
        else:
            order.paid_at = None

    def _entry_count(self, order_id: UUID) -> int:
        return self.session.execute(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.order_id == order_id)
        ).scalar_one()


def _snapshot(order: Order) -> tuple:
    return (
        Decimal(order.amount_paid or 0),
        enum_value(order.payment_status),
        Decimal(order.overpayment_amount or 0),
        order.paid_at,
        bool(order.requires_review),
        order.review_reason,
    )
