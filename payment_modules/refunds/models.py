"""
payment_modules.refunds.models
==============================

Responsibility:
    Vocabulary of the refund workflow: request and item statuses, refund
    types, methods and reason codes, plus the frozen DTOs the service
    returns.  No business logic.

Architecture:
    Module layer.  In-memory value objects, NOT ORM models (see ``orm.py``).

Invariants enforced:
    - All monetary fields are ``Decimal``.
    - All DTOs are frozen.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"

    @property
    def ledger_entry_type(self) -> str:
        return "refund" if self is RefundType.FULL else "partial_refund"


class RefundMethod(str, Enum):
    """How the money goes back.  ``original_payment_method`` reuses the charge's method."""
    ORIGINAL_PAYMENT_METHOD = "original_payment_method"
    BANK_TRANSFER = "bank_transfer"
    MANUAL = "manual"


class RefundReason(str, Enum):
    ORDER_CANCELLED = "order_cancelled"
    CUSTOMER_REQUEST = "customer_request"
    DUPLICATE_PAYMENT = "duplicate_payment"
    OVERPAYMENT = "overpayment"
    PRODUCT_ISSUE = "product_issue"
    SHIPPING_ISSUE = "shipping_issue"
    PRICE_ADJUSTMENT = "price_adjustment"
    OTHER = "other"


class RefundRequestStatus(str, Enum):
    """See ``workflows.REFUND_REQUEST_WORKFLOW``."""
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class RefundItemStatus(str, Enum):
    """See ``workflows.REFUND_ITEM_WORKFLOW``."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GatewayOutcome(str, Enum):
    """Result reported by the gateway for one refund item."""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class RefundItemInfo:
    """
    One allocation of a refund against a prior payment entry.

    ``allocated_amount`` is in the order's settlement currency;
    ``payment_amount`` is the same value in the payment's original currency.
    """
    id: UUID
    refund_request_id: UUID
    payment_entry_id: UUID
    allocation_order: int
    allocated_amount: Decimal
    currency: str
    payment_amount: Decimal
    payment_currency: str
    exchange_rate: Decimal
    gateway_code: str | None
    status: RefundItemStatus
    gateway_refund_id: str | None = None
    refund_entry_id: UUID | None = None
    failure_reason: str | None = None
    attempts: int = 0
    processed_at: datetime | None = None


@dataclass(frozen=True)
class RefundRequestInfo:
    id: UUID
    request_number: str
    order_id: UUID
    refund_type: RefundType
    status: RefundRequestStatus
    requested_amount: Decimal
    approved_amount: Decimal | None
    currency: str
    reason_code: RefundReason
    refund_method: RefundMethod
    requested_by_id: UUID
    items: tuple[RefundItemInfo, ...] = field(default_factory=tuple)

    @property
    def allocated_amount(self) -> Decimal:
        return sum(
            (i.allocated_amount for i in self.items if i.status != RefundItemStatus.CANCELLED),
            Decimal("0"),
        )

    @property
    def refunded_amount(self) -> Decimal:
        return sum(
            (i.allocated_amount for i in self.items if i.status == RefundItemStatus.COMPLETED),
            Decimal("0"),
        )


@dataclass(frozen=True)
class RefundableBalance:
    """Unrefunded amount of one completed customer payment entry."""
    payment_entry_id: UUID
    base_amount: Decimal
    reserved: Decimal
    unrefunded: Decimal
