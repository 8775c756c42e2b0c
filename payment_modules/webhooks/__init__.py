"""
payment_modules.webhooks
========================

Responsibility:
    Webhook ingestion gateway: turn authenticated gateway payment events
    into exactly one payment transaction and one ledger entry per logical
    event, resolve guest checkout sessions and record placed orders.

Architecture:
    Module layer.  May import from payment_kernel and payment_config.
    MUST NOT be imported by payment_kernel.

Invariants enforced:
    - Redelivered events are success no-ops.
    - Each event is applied all-or-nothing.
"""

from payment_modules.webhooks.models import (
    EsewaResponse,
    GatewayEvent,
    GenericGatewayResponse,
    GuestCheckoutSessionInfo,
    GuestSessionStatus,
    PaymentTransactionInfo,
    PaymentTransactionStatus,
    PayUResponse,
    PlacedOrderInfo,
    StripeResponse,
    WebhookOutcome,
    parse_gateway_response,
)
from payment_modules.webhooks.service import WebhookService
from payment_modules.webhooks.workflows import GUEST_SESSION_WORKFLOW, PAYMENT_TRANSACTION_WORKFLOW

__all__ = [
    "EsewaResponse",
    "GUEST_SESSION_WORKFLOW",
    "GatewayEvent",
    "GenericGatewayResponse",
    "GuestCheckoutSessionInfo",
    "GuestSessionStatus",
    "PAYMENT_TRANSACTION_WORKFLOW",
    "PayUResponse",
    "PaymentTransactionInfo",
    "PaymentTransactionStatus",
    "PlacedOrderInfo",
    "StripeResponse",
    "WebhookOutcome",
    "WebhookService",
    "parse_gateway_response",
]
