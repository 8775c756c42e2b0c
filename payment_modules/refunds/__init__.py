"""
payment_modules.refunds
=======================

Responsibility:
    Refund requests against completed customer payments: LIFO allocation
    across prior payments, administrative review, per-item execution
    against gateway outcomes and status aggregation.

Architecture:
    Module layer.  May import from payment_kernel and payment_config.
    MUST NOT be imported by payment_kernel.

Invariants enforced:
    - A refund never exceeds the amount paid, and no payment entry is
      refunded beyond its base amount across all live requests.
    - Money leaves only through ``LedgerService.write``, so each completed
      item has one negative ledger entry and one posted journal row.

Audit relevance:
    Every state change logs a structured event keyed by request or item id.
"""

from payment_modules.refunds.models import (
    GatewayOutcome,
    RefundableBalance,
    RefundItemInfo,
    RefundItemStatus,
    RefundMethod,
    RefundReason,
    RefundRequestInfo,
    RefundRequestStatus,
    RefundType,
)
from payment_modules.refunds.service import RefundService
from payment_modules.refunds.workflows import REFUND_ITEM_WORKFLOW, REFUND_REQUEST_WORKFLOW

__all__ = [
    "GatewayOutcome",
    "REFUND_ITEM_WORKFLOW",
    "REFUND_REQUEST_WORKFLOW",
    "RefundItemInfo",
    "RefundItemStatus",
    "RefundMethod",
    "RefundReason",
    "RefundRequestInfo",
    "RefundRequestStatus",
    "RefundService",
    "RefundType",
    "RefundableBalance",
]
