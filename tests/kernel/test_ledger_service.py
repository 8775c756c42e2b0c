"""
Tests for LedgerService: signed storage, settlement amounts, journal
pairing, pending transitions and the projection recompute on every write.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from payment_kernel.domain.projection import PaymentStatus
from payment_kernel.exceptions import (
    ExchangeRateRequiredError,
    InvalidAmountError,
    InvalidCurrencyError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentEntryNotRefundableError,
    RefundExceedsRefundableError,
    ValidationError,
)
from payment_kernel.models.ledger import LedgerEntryStatus, LedgerEntryType


class TestLedgerWrite:
    """Signs, validation and the paired journal posting."""

    def test_full_payment_marks_order_paid(self, make_order, pay, deterministic_clock):
        order = make_order(total_owed=Decimal("100.00"))

        result = pay(order, Decimal("100.00"))

        assert result.status == LedgerEntryStatus.COMPLETED
        assert result.balance_before == Decimal("0")
        assert result.balance_after == Decimal("100.00")
        assert result.projection.payment_status == PaymentStatus.PAID
        assert result.projection.amount_paid == Decimal("100.00")
        assert result.projection.paid_at == deterministic_clock.now()

    def test_payment_posts_gateway_cash_against_receivable(self, make_order, pay, journal_selector):
        order = make_order()

        result = pay(order, Decimal("40.00"), gateway="stripe")

        txn = journal_selector.get(result.financial_transaction_id)
        assert txn.status == "posted"
        assert txn.debit_account == "1112"
        assert txn.credit_account == "1120"
        assert txn.amount == Decimal("40.00")

    def test_partial_refund_stored_negative_and_reclassifies(
        self, make_order, pay, ledger_service, test_actor_id
    ):
        order = make_order(total_owed=Decimal("100.00"))
        payment = pay(order, Decimal("100.00"))

        result = ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.PARTIAL_REFUND,
            amount=Decimal("30.00"),
            currency="USD",
            actor_id=test_actor_id,
            gateway_code="stripe",
            related_entry_id=payment.entry_id,
        )

        assert result.amount == Decimal("-30.00")
        assert result.balance_after == Decimal("70.00")
        assert result.projection.payment_status == PaymentStatus.PARTIAL
        assert result.projection.amount_paid == Decimal("70.00")
        assert result.projection.paid_at is None

    def test_refund_must_name_payment(self, make_order, pay, ledger_service, test_actor_id):
        order = make_order()
        pay(order, Decimal("50.00"))

        with pytest.raises(ValidationError):
            ledger_service.write(
                order_id=order.id,
                entry_type=LedgerEntryType.REFUND,
                amount=Decimal("10.00"),
                currency="USD",
                actor_id=test_actor_id,
            )

    def test_refund_cannot_exceed_payment_remainder(
        self, make_order, pay, ledger_service, ledger_selector, test_actor_id
    ):
        order = make_order()
        payment = pay(order, Decimal("50.00"))
        refund = dict(
            order_id=order.id,
            entry_type=LedgerEntryType.PARTIAL_REFUND,
            currency="USD",
            actor_id=test_actor_id,
            related_entry_id=payment.entry_id,
        )
        ledger_service.write(amount=Decimal("30.00"), **refund)

        with pytest.raises(RefundExceedsRefundableError) as exc_info:
            ledger_service.write(amount=Decimal("25.00"), **refund)

        assert exc_info.value.refundable == Decimal("20.00")
        assert len(ledger_selector.history(order.id)) == 2

    def test_refund_against_other_order_rejected(self, make_order, pay, ledger_service, test_actor_id):
        order = make_order()
        pay(order, Decimal("50.00"))
        foreign = pay(make_order(), Decimal("50.00"))

        with pytest.raises(PaymentEntryNotRefundableError):
            ledger_service.write(
                order_id=order.id,
                entry_type=LedgerEntryType.REFUND,
                amount=Decimal("10.00"),
                currency="USD",
                actor_id=test_actor_id,
                related_entry_id=foreign.entry_id,
            )

    def test_overpayment_recorded(self, make_order, pay):
        order = make_order(total_owed=Decimal("100.00"))

        result = pay(order, Decimal("120.00"))

        assert result.projection.payment_status == PaymentStatus.OVERPAID
        assert result.projection.overpayment_amount == Decimal("20.00")

    def test_gateway_fee_does_not_change_amount_paid(self, make_order, pay, ledger_service, test_actor_id):
        order = make_order(total_owed=Decimal("100.00"))
        pay(order, Decimal("100.00"))

        result = ledger_service.write(
            order_id=order.id,
            entry_type="gateway_fee",
            amount=Decimal("2.90"),
            currency="USD",
            actor_id=test_actor_id,
            gateway_code="stripe",
        )

        assert result.amount == Decimal("2.90")
        assert result.projection.amount_paid == Decimal("100.00")
        assert result.projection.payment_status == PaymentStatus.PAID

    def test_zero_amount_rejected(self, make_order, ledger_service, test_actor_id):
        order = make_order()
        with pytest.raises(InvalidAmountError):
            ledger_service.write(
                order_id=order.id,
                entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
                amount=Decimal("0"),
                currency="USD",
                actor_id=test_actor_id,
            )

    def test_negative_payment_rejected(self, make_order, ledger_service, test_actor_id):
        order = make_order()
        with pytest.raises(InvalidAmountError):
            ledger_service.write(
                order_id=order.id,
                entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
                amount=Decimal("-5.00"),
                currency="USD",
                actor_id=test_actor_id,
            )

    def test_float_amount_rejected(self, make_order, ledger_service, test_actor_id):
        order = make_order()
        with pytest.raises(InvalidAmountError):
            ledger_service.write(
                order_id=order.id,
                entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
                amount=10.5,
                currency="USD",
                actor_id=test_actor_id,
            )

    def test_unknown_currency_rejected(self, make_order, ledger_service, test_actor_id):
        order = make_order()
        with pytest.raises(InvalidCurrencyError):
            ledger_service.write(
                order_id=order.id,
                entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
                amount=Decimal("10.00"),
                currency="ZZZ",
                actor_id=test_actor_id,
            )

    def test_unknown_entry_type_rejected(self, make_order, ledger_service, test_actor_id):
        order = make_order()
        with pytest.raises(ValidationError):
            ledger_service.write(
                order_id=order.id,
                entry_type="chargeback",
                amount=Decimal("10.00"),
                currency="USD",
                actor_id=test_actor_id,
            )

    def test_unknown_order_rejected(self, ledger_service, test_actor_id):
        with pytest.raises(OrderNotFoundError):
            ledger_service.write(
                order_id=uuid4(),
                entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
                amount=Decimal("10.00"),
                currency="USD",
                actor_id=test_actor_id,
            )


class TestMultiCurrency:
    """Original amount and currency kept; base amount in settlement currency."""

    def test_foreign_payment_requires_rate(self, make_order, ledger_service, ledger_selector, test_actor_id):
        order = make_order(currency="USD")

        with pytest.raises(ExchangeRateRequiredError):
            ledger_service.write(
                order_id=order.id,
                entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
                amount=Decimal("50.00"),
                currency="EUR",
                actor_id=test_actor_id,
            )

        assert ledger_selector.history(order.id) == []

    def test_foreign_payment_converted(self, make_order, pay, ledger_selector):
        order = make_order(total_owed=Decimal("100.00"), currency="USD")

        result = pay(order, Decimal("50.00"), "EUR", exchange_rate=Decimal("1.10"))

        entry = ledger_selector.get(result.entry_id)
        assert entry.amount == Decimal("50.00")
        assert entry.currency == "EUR"
        # SQLite hands Numeric back through float; compare at rate precision
        assert entry.exchange_rate.quantize(Decimal("0.000001")) == Decimal("1.10")
        assert entry.base_amount == Decimal("55.00")
        assert result.projection.amount_paid == Decimal("55.00")
        assert result.projection.payment_status == PaymentStatus.PARTIAL

    def test_journal_records_original_currency(self, make_order, pay, journal_selector):
        order = make_order(currency="USD")

        result = pay(order, Decimal("50.00"), "EUR", exchange_rate=Decimal("1.10"))

        txn = journal_selector.get(result.financial_transaction_id)
        assert txn.currency == "EUR"
        assert txn.amount == Decimal("50.00")

    def test_non_positive_rate_rejected(self, make_order, pay):
        order = make_order(currency="USD")
        with pytest.raises(InvalidAmountError):
            pay(order, Decimal("50.00"), "EUR", exchange_rate=Decimal("0"))

    @pytest.mark.parametrize(
        "currency, accepted, rejected",
        [
            ("USD", "10.01", "10.005"),
            ("JPY", "5000", "5000.5"),
            ("KWD", "12.345", "12.3455"),
        ],
    )
    def test_amounts_limited_to_minor_unit(self, make_order, pay, currency, accepted, rejected):
        order = make_order(total_owed=Decimal("10000"), currency=currency)

        assert pay(order, Decimal(accepted)).amount == Decimal(accepted)
        with pytest.raises(InvalidAmountError):
            pay(order, Decimal(rejected))


class TestPendingEntries:
    """pending -> completed | failed, with the journal row following."""

    def _pending(self, ledger_service, order, actor_id, amount=Decimal("100.00")):
        return ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
            amount=amount,
            currency="USD",
            actor_id=actor_id,
            status=LedgerEntryStatus.PENDING,
            gateway_code="payu",
        )

    def test_pending_entry_does_not_count(self, make_order, ledger_service, journal_selector, test_actor_id):
        order = make_order()

        result = self._pending(ledger_service, order, test_actor_id)

        assert result.projection.payment_status == PaymentStatus.UNPAID
        assert journal_selector.get(result.financial_transaction_id).status == "pending"

    def test_completion_posts_journal_and_updates_projection(
        self, make_order, ledger_service, journal_selector, test_actor_id
    ):
        order = make_order()
        pending = self._pending(ledger_service, order, test_actor_id)

        result = ledger_service.transition(
            pending.entry_id, LedgerEntryStatus.COMPLETED, test_actor_id, gateway_transaction_id="payu-1",
        )

        assert result.status == LedgerEntryStatus.COMPLETED
        assert result.balance_after == Decimal("100.00")
        assert result.projection.payment_status == PaymentStatus.PAID
        assert journal_selector.get(result.financial_transaction_id).status == "posted"
        assert ledger_service.get_entry(pending.entry_id).gateway_transaction_id == "payu-1"

    def test_failure_voids_journal(self, make_order, ledger_service, journal_selector, test_actor_id):
        order = make_order()
        pending = self._pending(ledger_service, order, test_actor_id)

        result = ledger_service.transition(pending.entry_id, LedgerEntryStatus.FAILED, test_actor_id)

        assert result.status == LedgerEntryStatus.FAILED
        assert result.projection.payment_status == PaymentStatus.UNPAID
        assert journal_selector.get(result.financial_transaction_id).status == "void"

    def test_final_entry_cannot_transition(self, make_order, pay, ledger_service, test_actor_id):
        order = make_order()
        result = pay(order, Decimal("10.00"))

        with pytest.raises(InvalidTransitionError):
            ledger_service.transition(result.entry_id, LedgerEntryStatus.FAILED, test_actor_id)

    def test_failed_on_arrival_has_no_journal(self, make_order, ledger_service, test_actor_id):
        order = make_order()

        result = ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
            amount=Decimal("10.00"),
            currency="USD",
            actor_id=test_actor_id,
            status=LedgerEntryStatus.FAILED,
        )

        assert result.financial_transaction_id is None
        assert result.projection.amount_paid == Decimal("0")


class TestProjection:
    """Recompute semantics that callers rely on."""

    def test_recompute_is_idempotent(self, make_order, pay, ledger_service):
        order = make_order()
        pay(order, Decimal("60.00"))

        first = ledger_service.projection.recompute(order.id)
        second = ledger_service.projection.recompute(order.id)

        assert first.changed is False
        assert second == first

    def test_negative_sum_flagged_for_review(self, make_order, ledger_service, test_actor_id):
        order = make_order()

        result = ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.ADJUSTMENT,
            amount=Decimal("25.00"),
            currency="USD",
            actor_id=test_actor_id,
        )

        assert result.projection.requires_review is True
        assert result.projection.payment_status == PaymentStatus.UNPAID
        assert result.projection.amount_paid == Decimal("-25.00")

    def test_total_owed_change_reclassifies(self, make_order, pay, ledger_service, test_actor_id):
        order = make_order(total_owed=Decimal("100.00"))
        pay(order, Decimal("100.00"))

        result = ledger_service.projection.update_total_owed(order.id, Decimal("150.00"), test_actor_id)

        assert result.payment_status == PaymentStatus.PARTIAL

    def test_sub_cent_payment_rejected(self, make_order, pay, ledger_selector):
        order = make_order(total_owed=Decimal("100.00"))

        with pytest.raises(InvalidAmountError):
            pay(order, Decimal("99.995"))

        assert ledger_selector.history(order.id) == []

    def test_totals_match_projection(self, make_order, pay, ledger_service, ledger_selector, test_actor_id):
        order = make_order(total_owed=Decimal("100.00"))
        pay(order, Decimal("60.00"))
        second = pay(order, Decimal("40.00"))
        last = ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.REFUND,
            amount=Decimal("15.00"),
            currency="USD",
            actor_id=test_actor_id,
            related_entry_id=second.entry_id,
        )

        totals = ledger_selector.totals(order.id)

        assert totals.payments == Decimal("100.00")
        assert totals.refunds == Decimal("15.00")
        assert totals.entry_count == 3
        assert totals.net_paid == last.projection.amount_paid


class TestHistory:
    """Ordering and idempotency lookups."""

    def test_history_oldest_first(self, make_order, pay, ledger_selector):
        order = make_order()
        first = pay(order, Decimal("10.00"))
        second = pay(order, Decimal("20.00"))

        history = ledger_selector.history(order.id)

        assert [e.id for e in history] == [first.entry_id, second.entry_id]
        assert history[0].sequence < history[1].sequence

    def test_history_resumes_after_sequence(self, make_order, pay, ledger_selector):
        order = make_order()
        first = pay(order, Decimal("10.00"))
        second = pay(order, Decimal("20.00"))

        rest = ledger_selector.history(order.id, after_sequence=first.sequence)

        assert [e.id for e in rest] == [second.entry_id]

    def test_find_by_idempotency_key(self, make_order, ledger_service, test_actor_id):
        order = make_order()
        result = ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
            amount=Decimal("10.00"),
            currency="USD",
            actor_id=test_actor_id,
            idempotency_key="stripe:payment:ch_1",
        )

        assert ledger_service.find_by_idempotency_key("stripe:payment:ch_1").id == result.entry_id
        assert ledger_service.find_by_idempotency_key("missing") is None

    def test_write_is_logged(self, make_order, pay, captured_logs):
        order = make_order()
        pay(order, Decimal("10.00"))

        messages = [r["message"] for r in captured_logs()]
        assert "ledger_entry_written" in messages
        assert "projection_recomputed" in messages


class TestLookups:

    @pytest.mark.parametrize(
        "gateway, account",
        [("payu", "1111"), ("Stripe", "1112"), ("esewa", "1114"), ("paypal", "1113"), (None, "1113")],
    )
    def test_gateway_cash_account(self, chart, gateway, account):
        assert chart.gateway_cash_account(gateway) == account

    def test_seeded_account_lookup(self, chart):
        account = chart.get_account("1112")

        assert account.name == "Stripe Clearing"
        assert account.parent_code == "1110"
        assert chart.require_postable("1112") is account

    def test_running_balance_is_balance_after(self, make_order, pay):
        order = make_order()
        pay(order, Decimal("15.00"))

        second = pay(order, Decimal("25.00"))

        assert second.running_balance == second.balance_after == Decimal("40.00")

    def test_entries_by_gateway_transaction(self, make_order, ledger_service, ledger_selector, test_actor_id):
        order = make_order()
        result = ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
            amount=Decimal("12.00"),
            currency="USD",
            actor_id=test_actor_id,
            gateway_code="payu",
            gateway_transaction_id="403993715",
        )

        assert [e.id for e in ledger_selector.by_gateway_transaction_id("403993715")] == [result.entry_id]
        assert ledger_selector.by_gateway_transaction_id("unknown") == []

    def test_signed_base_amount(self, make_order, pay, ledger_service, ledger_selector, test_actor_id):
        order = make_order()
        payment = pay(order, Decimal("50.00"))
        refund = ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.PARTIAL_REFUND,
            amount=Decimal("20.00"),
            currency="USD",
            actor_id=test_actor_id,
            related_entry_id=payment.entry_id,
        )

        assert ledger_selector.get(payment.entry_id).signed_base_amount == Decimal("50.00")
        assert ledger_selector.get(refund.entry_id).signed_base_amount == Decimal("-20.00")

    def test_journal_found_by_ledger_entry(self, make_order, pay, journal_selector):
        order = make_order()
        result = pay(order, Decimal("10.00"))

        txns = journal_selector.for_reference(result.entry_id)

        assert [t.id for t in txns] == [result.financial_transaction_id]
