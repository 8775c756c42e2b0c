"""Pure tests for inbound event parsing and gateway response tagging."""

from decimal import Decimal
from uuid import uuid4

import pytest

from payment_kernel.exceptions import InvalidAmountError, MissingWebhookFieldError, ValidationError
from payment_modules.webhooks.models import (
    EsewaResponse,
    GatewayEvent,
    GenericGatewayResponse,
    PayUResponse,
    parse_gateway_response,
    response_from_metadata,
    response_to_metadata,
)


def _body(**overrides):
    body = {
        "order_id": str(uuid4()),
        "transaction_id": "TXN-42",
        "amount": "1500.50",
        "currency": "npr",
        "status": " success ",
        "payment_method": "esewa",
    }
    body.update(overrides)
    return body


class TestFromPayload:

    def test_normalises_fields(self):
        event = GatewayEvent.from_payload(_body(exchange_rate="0.0075"))

        assert event.amount == Decimal("1500.50")
        assert event.currency == "NPR"
        assert event.status == "success"
        assert event.exchange_rate == Decimal("0.0075")
        assert event.gateway_code == "esewa"
        assert event.gateway_transaction_id is None
        assert not event.create_order

    @pytest.mark.parametrize("field", ["amount", "currency", "order_id", "status"])
    def test_required_fields(self, field):
        body = _body()
        body[field] = "  "
        with pytest.raises(MissingWebhookFieldError):
            GatewayEvent.from_payload(body)

    def test_amount_must_be_numeric(self):
        with pytest.raises(InvalidAmountError):
            GatewayEvent.from_payload(_body(amount="12,50 EUR"))

    def test_order_id_must_be_uuid(self):
        with pytest.raises(ValidationError):
            GatewayEvent.from_payload(_body(order_id="order-7"))


class TestGatewayResponses:

    def test_type_chosen_by_gateway(self):
        payu = parse_gateway_response("PayU", {"mihpayid": "403993715", "bank_ref_no": "BR1"})
        esewa = parse_gateway_response("esewa", {"refId": "0007ZJ2"})

        assert payu == PayUResponse(mihpayid="403993715", bank_ref_num="BR1")
        assert esewa == EsewaResponse(ref_id="0007ZJ2")

    def test_unknown_gateway_keeps_raw_map(self):
        response = parse_gateway_response("paypal", {"capture_id": "5O1", "n": 3})

        assert response == GenericGatewayResponse(gateway="paypal", fields={"capture_id": "5O1", "n": 3})

    def test_metadata_round_trip(self):
        for response in (
            PayUResponse(mihpayid="1", status="success"),
            GenericGatewayResponse(gateway="paypal", fields={"a": "b"}),
        ):
            assert response_from_metadata(response_to_metadata(response)) == response

    def test_none_fields_dropped(self):
        assert response_to_metadata(EsewaResponse(ref_id="R")) == {"kind": "esewa", "ref_id": "R"}

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            response_from_metadata({"kind": "bitcoin"})

    def test_empty_metadata(self):
        assert response_from_metadata(None) is None
