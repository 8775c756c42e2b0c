"""Utility modules for the payment kernel."""

from payment_kernel.utils.idempotency import (
    gateway_event_key,
    generate_idempotency_key,
    parse_idempotency_key,
)

__all__ = [
    "gateway_event_key",
    "generate_idempotency_key",
    "parse_idempotency_key",
]
