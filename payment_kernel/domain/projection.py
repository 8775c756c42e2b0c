"""
Projection -- pure rules for the order payment projection.

Responsibility:
    Sign each ledger entry by type, sum completed entries, and classify the
    result against the order's total owed.  ProjectionService applies the
    result to the order row; this module never touches storage.

Invariants enforced:
    - amount paid = sum of completed entries, payments and credit
      applications positive, refunds and adjustments negative, gateway fees
      excluded.
    - Classification is a pure function of (total owed, amount paid,
      tolerance), which makes recomputation idempotent.
    - A negative sum has no valid status: it is reported for review
      instead of being coerced.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from payment_kernel.db.types import ZERO, within_tolerance

POSITIVE_ENTRY_TYPES = frozenset({"customer_payment", "credit_applied"})
NEGATIVE_ENTRY_TYPES = frozenset({"refund", "partial_refund", "adjustment"})


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERPAID = "overpaid"


@dataclass(frozen=True)
class PaymentClassification:
    status: PaymentStatus
    amount_paid: Decimal
    overpayment_amount: Decimal
    requires_review: bool = False
    review_reason: str | None = None

    @property
    def is_settled(self) -> bool:
        return self.status in (PaymentStatus.PAID, PaymentStatus.OVERPAID)


def signed_amount(entry_type: str, amount: Decimal) -> Decimal:
    """Contribution of one entry to the amount paid."""
    kind = str(getattr(entry_type, "value", entry_type))
    if kind in POSITIVE_ENTRY_TYPES:
        return abs(amount)
    if kind in NEGATIVE_ENTRY_TYPES:
        return -abs(amount)
    return ZERO


def sum_completed(entries: Iterable[tuple[str, str, Decimal]]) -> Decimal:
    """Sum ``(entry_type, status, base_amount)`` triples, completed only."""
    total = ZERO
    for entry_type, status, amount in entries:
        if str(getattr(status, "value", status)) != "completed":
            continue
        total += signed_amount(entry_type, amount)
    return total


def classify(total_owed: Decimal, amount_paid: Decimal, tolerance: Decimal) -> PaymentClassification:
    """
    Classify ``amount_paid`` against ``total_owed``.

    Near-equality within ``tolerance`` counts as paid (or unpaid at zero)
    so rounding noise never produces a spurious partial/overpaid state.
    """
    if amount_paid < ZERO and not within_tolerance(amount_paid, ZERO, tolerance):
        return PaymentClassification(
            status=PaymentStatus.UNPAID,
            amount_paid=amount_paid,
            overpayment_amount=ZERO,
            requires_review=True,
            review_reason=f"ledger sum {amount_paid} is negative",
        )
    if within_tolerance(amount_paid, ZERO, tolerance):
        status = PaymentStatus.UNPAID
    elif within_tolerance(amount_paid, total_owed, tolerance):
        status = PaymentStatus.PAID
    elif amount_paid < total_owed:
        status = PaymentStatus.PARTIAL
    else:
        status = PaymentStatus.OVERPAID

    overpayment = amount_paid - total_owed if status == PaymentStatus.OVERPAID else ZERO
    return PaymentClassification(
        status=status,
        amount_paid=amount_paid,
        overpayment_amount=overpayment,
    )
