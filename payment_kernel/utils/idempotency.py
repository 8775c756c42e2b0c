"""
Idempotency key utilities.

A ledger entry's idempotency key names the logical event that produced it,
so a redelivered gateway event or a re-run unit of work finds the existing
entry instead of writing a second one.
"""

from uuid import UUID


def generate_idempotency_key(
    producer: str,
    event_type: str,
    event_id: UUID | str,
) -> str:
    """
    Generate an idempotency key for an event.

    Format: producer:event_type:event_id

    Example:
        >>> generate_idempotency_key("stripe", "payment", "ch_3N1")
        'stripe:payment:ch_3N1'
    """
    return f"{producer}:{event_type}:{event_id}"


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Split a key into (producer, event_type, event_id).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 2)
    if len(parts) != 3:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]


def gateway_event_key(gateway_transaction_id: str | None, transaction_id: str | None) -> str:
    """
    Idempotency key for a gateway event: the gateway's transaction id, or
    the internal transaction id when the gateway omits one.

    Raises:
        ValueError: If both are missing or blank.
    """
    for candidate in (gateway_transaction_id, transaction_id):
        if candidate is not None and str(candidate).strip():
            return str(candidate).strip()
    raise ValueError("gateway event carries no transaction id")
