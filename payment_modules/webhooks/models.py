"""
payment_modules.webhooks.models
===============================

Responsibility:
    Vocabulary of webhook ingestion: payment transaction and guest
    checkout statuses, the authenticated ``GatewayEvent`` handed to the
    engine, the typed gateway responses (one per known gateway, an opaque
    map for the rest) and the structured ``WebhookOutcome``.

Architecture:
    Module layer.  In-memory value objects, NOT ORM models (see ``orm.py``).

Invariants enforced:
    - ``GatewayEvent.from_payload`` rejects payloads missing a transaction
      id, amount, currency or order id; amounts are ``Decimal``.
    - Gateway responses round-trip through ``to_metadata`` /
      ``parse_gateway_response`` with their ``kind`` tag.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

from payment_kernel.exceptions import InvalidAmountError, MissingWebhookFieldError, ValidationError


class PaymentTransactionStatus(str, Enum):
    """See ``workflows.PAYMENT_TRANSACTION_WORKFLOW``."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GuestSessionStatus(str, Enum):
    """See ``workflows.GUEST_SESSION_WORKFLOW``."""
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PlacedOrderStatus(str, Enum):
    CONFIRMED = "confirmed"


# -----------------------------------------------------------------------------
# Gateway responses (tagged union)
# -----------------------------------------------------------------------------


def _text(raw: Mapping[str, Any], *names: str) -> str | None:
    for name in names:
        value = raw.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


@dataclass(frozen=True)
class PayUResponse:
    kind: ClassVar[str] = "payu"

    mihpayid: str | None = None
    status: str | None = None
    mode: str | None = None
    bank_ref_num: str | None = None
    unmapped_status: str | None = None
    error_message: str | None = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> PayUResponse:
        return cls(
            mihpayid=_text(raw, "mihpayid"),
            status=_text(raw, "status"),
            mode=_text(raw, "mode"),
            bank_ref_num=_text(raw, "bank_ref_num", "bank_ref_no"),
            unmapped_status=_text(raw, "unmappedstatus", "unmapped_status"),
            error_message=_text(raw, "error_Message", "error_message"),
        )


@dataclass(frozen=True)
class StripeResponse:
    kind: ClassVar[str] = "stripe"

    payment_intent_id: str | None = None
    charge_id: str | None = None
    status: str | None = None
    payment_method_type: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> StripeResponse:
        return cls(
            payment_intent_id=_text(raw, "payment_intent", "payment_intent_id"),
            charge_id=_text(raw, "charge", "charge_id", "id"),
            status=_text(raw, "status"),
            payment_method_type=_text(raw, "payment_method_type"),
            failure_code=_text(raw, "failure_code"),
            failure_message=_text(raw, "failure_message"),
        )


@dataclass(frozen=True)
class EsewaResponse:
    kind: ClassVar[str] = "esewa"

    ref_id: str | None = None
    product_code: str | None = None
    status: str | None = None
    total_amount: str | None = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> EsewaResponse:
        return cls(
            ref_id=_text(raw, "refId", "ref_id", "transaction_code"),
            product_code=_text(raw, "product_code"),
            status=_text(raw, "status"),
            total_amount=_text(raw, "total_amount"),
        )


@dataclass(frozen=True)
class GenericGatewayResponse:
    """Unknown gateways: an opaque, unvalidated field map."""
    kind: ClassVar[str] = "generic"

    gateway: str
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], gateway: str = "unknown") -> GenericGatewayResponse:
        return cls(gateway=gateway, fields=dict(raw))


GatewayResponse = PayUResponse | StripeResponse | EsewaResponse | GenericGatewayResponse

_RESPONSE_TYPES: dict[str, type] = {
    PayUResponse.kind: PayUResponse,
    StripeResponse.kind: StripeResponse,
    EsewaResponse.kind: EsewaResponse,
}


def parse_gateway_response(gateway: str | None, raw: Mapping[str, Any] | None) -> GatewayResponse:
    """Pick the response type by gateway code; unknown gateways keep the raw map."""
    raw = raw or {}
    code = (gateway or "").strip().lower()
    response_type = _RESPONSE_TYPES.get(code)
    if response_type is None:
        return GenericGatewayResponse.from_raw(raw, gateway=code or "unknown")
    return response_type.from_raw(raw)


def response_to_metadata(response: GatewayResponse) -> dict[str, Any]:
    """JSON-safe dict tagged with ``kind``; ``None`` fields are dropped."""
    if isinstance(response, GenericGatewayResponse):
        return {"kind": response.kind, "gateway": response.gateway, "fields": dict(response.fields)}
    data = {k: v for k, v in response.__dict__.items() if v is not None}
    return {"kind": response.kind, **data}


def response_from_metadata(data: Mapping[str, Any] | None) -> GatewayResponse | None:
    if not data:
        return None
    kind = data.get("kind")
    if kind == GenericGatewayResponse.kind:
        return GenericGatewayResponse(gateway=data.get("gateway", "unknown"), fields=dict(data.get("fields", {})))
    response_type = _RESPONSE_TYPES.get(kind)
    if response_type is None:
        raise ValidationError(f"Unknown gateway response kind: {kind!r}")
    return response_type(**{k: v for k, v in data.items() if k != "kind"})


# -----------------------------------------------------------------------------
# Inbound event
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayEvent:
    """
    An authenticated gateway notification, already verified by the
    transport.

    ``status`` is the gateway's own word (``success``, ``captured``,
    ``declined`` ...); the service maps it through configuration.
    """
    order_id: UUID
    amount: Decimal
    currency: str
    status: str
    transaction_id: str | None = None
    gateway_transaction_id: str | None = None
    payment_method: str | None = None
    gateway_code: str | None = None
    exchange_rate: Decimal | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    gateway_response: GatewayResponse | None = None
    guest_session_token: str | None = None
    create_order: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> GatewayEvent:
        """
        Build an event from a decoded webhook body.

        Raises:
            MissingWebhookFieldError: transaction id, amount, currency,
                status or order id absent.
            InvalidAmountError: amount or exchange rate is not a number.
            ValidationError: order id is not a UUID.
        """
        if not _text(payload, "gateway_transaction_id", "transaction_id"):
            raise MissingWebhookFieldError("transaction_id")
        for name in ("amount", "currency", "order_id", "status"):
            if payload.get(name) is None or not str(payload[name]).strip():
                raise MissingWebhookFieldError(name)

        try:
            order_id = UUID(str(payload["order_id"]))
        except ValueError:
            raise ValidationError(f"order_id is not a UUID: {payload['order_id']!r}") from None

        gateway = _text(payload, "gateway_code", "payment_method")
        rate = payload.get("exchange_rate")
        return cls(
            order_id=order_id,
            amount=_decimal(payload["amount"], "amount"),
            currency=str(payload["currency"]).strip().upper(),
            status=str(payload["status"]).strip(),
            transaction_id=_text(payload, "transaction_id"),
            gateway_transaction_id=_text(payload, "gateway_transaction_id"),
            payment_method=_text(payload, "payment_method"),
            gateway_code=gateway,
            exchange_rate=_decimal(rate, "exchange_rate") if rate is not None else None,
            customer_email=_text(payload, "customer_email"),
            customer_name=_text(payload, "customer_name"),
            customer_phone=_text(payload, "customer_phone"),
            gateway_response=parse_gateway_response(gateway, payload.get("gateway_response")),
            guest_session_token=_text(payload, "guest_session_token"),
            create_order=bool(payload.get("create_order", False)),
        )


def _decimal(raw: Any, name: str) -> Decimal:
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        raise InvalidAmountError(raw, f"{name} is not a number") from None
    if not value.is_finite():
        raise InvalidAmountError(raw, f"{name} is not a number")
    return value


# -----------------------------------------------------------------------------
# DTOs
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentTransactionInfo:
    id: UUID
    idempotency_key: str
    order_id: UUID
    transaction_id: str | None
    gateway_transaction_id: str | None
    amount: Decimal
    currency: str
    status: PaymentTransactionStatus
    payment_method: str | None
    gateway_code: str | None
    ledger_entry_id: UUID | None
    event_count: int
    gateway_response: GatewayResponse | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class GuestCheckoutSessionInfo:
    id: UUID
    session_token: str
    order_id: UUID
    guest_name: str
    guest_email: str
    guest_phone: str | None
    payment_currency: str
    payment_method: str
    payment_amount: Decimal
    status: GuestSessionStatus
    expires_at: datetime
    payment_transaction_id: UUID | None = None
    shipping_address: dict[str, Any] | None = None


@dataclass(frozen=True)
class PlacedOrderInfo:
    id: UUID
    order_number: str
    order_id: UUID
    payment_transaction_id: UUID
    total_amount: Decimal
    currency: str
    status: PlacedOrderStatus
    payment_method: str | None
    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None


@dataclass(frozen=True)
class WebhookOutcome:
    """
    What one ``process`` call did.

    The step flags follow the ingestion sequence: payment transaction
    recorded, ledger entry written or transitioned, projection
    recomputed, guest session resolved, placed order created.  On
    failure every flag is False (the unit rolled back) and
    ``error_message`` carries the single reason.
    """
    success: bool
    idempotency_key: str | None
    payment_status: PaymentTransactionStatus | None = None
    duplicate: bool = False
    payment_transaction_id: UUID | None = None
    ledger_entry_id: UUID | None = None
    transaction_recorded: bool = False
    ledger_written: bool = False
    projection_updated: bool = False
    guest_session_updated: bool = False
    placed_order_id: UUID | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def order_created(self) -> bool:
        return self.placed_order_id is not None

    @classmethod
    def failure(cls, idempotency_key: str | None, code: str, message: str) -> WebhookOutcome:
        return cls(
            success=False,
            idempotency_key=idempotency_key,
            error_code=code,
            error_message=message,
        )
