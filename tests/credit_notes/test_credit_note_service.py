"""
Tests for CreditNoteService: issuance, application as a payment source,
reversal, administrative transitions, expiry and the audit history.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from payment_kernel.domain.projection import PaymentStatus
from payment_kernel.exceptions import (
    AccessDeniedError,
    CreditNoteExpiredError,
    CreditNoteInUseError,
    CreditNoteNotFoundError,
    CreditNoteNotUsableError,
    CurrencyMismatchError,
    ImmutabilityViolationError,
    InvalidAmountError,
    InvalidTransitionError,
    MinimumOrderValueError,
    NothingToApplyError,
)
from payment_kernel.models.ledger import LedgerEntryType
from payment_modules.credit_notes.models import ApplicationStatus, CreditNoteAction, CreditNoteStatus
from payment_modules.credit_notes.orm import CreditNoteHistoryModel


@pytest.fixture
def issue(credit_note_service, admin, customer):
    def _issue(amount="20.00", currency="USD", **fields):
        fields.setdefault("auto_approve", True)
        return credit_note_service.issue(
            customer_id=fields.pop("customer_id", customer.actor_id),
            amount=Decimal(amount),
            currency=currency,
            reason="goodwill",
            principal=admin,
            **fields,
        )

    return _issue


class TestIssue:

    def test_draft_until_approved(self, issue, credit_note_service, admin, journal_selector):
        note = issue(auto_approve=False)

        assert note.status == CreditNoteStatus.DRAFT
        assert note.note_number == "CN-2024-000001"
        assert note.issuance_transaction_id is None

        approved = credit_note_service.approve(note.id, admin)

        assert approved.status == CreditNoteStatus.ACTIVE
        txn = journal_selector.get(approved.issuance_transaction_id)
        assert (txn.debit_account, txn.credit_account) == ("5200", "2110")
        assert txn.amount == Decimal("20.00")

    def test_auto_approve(self, issue):
        note = issue()
        assert note.status == CreditNoteStatus.ACTIVE
        assert note.amount_available == Decimal("20.00")

    def test_default_validity_window(self, issue, deterministic_clock):
        note = issue()
        assert note.valid_from == deterministic_clock.today()
        assert (note.valid_until - note.valid_from).days == 365

    def test_customer_cannot_issue(self, credit_note_service, customer):
        with pytest.raises(AccessDeniedError):
            credit_note_service.issue(
                customer_id=customer.actor_id,
                amount=Decimal("10.00"),
                currency="USD",
                reason="self-service",
                principal=customer,
            )

    def test_numbers_are_sequential(self, issue):
        assert issue().note_number == "CN-2024-000001"
        assert issue().note_number == "CN-2024-000002"

    def test_sub_cent_amount_rejected(self, issue):
        with pytest.raises(InvalidAmountError):
            issue("19.999")

    def test_sub_cent_application_rejected(self, issue, make_order, credit_note_service, customer):
        note = issue("20.00")
        order = make_order(total_owed=Decimal("50.00"))

        with pytest.raises(InvalidAmountError):
            credit_note_service.apply(note.id, order.id, customer, amount=Decimal("5.005"))


class TestApply:

    def test_partially_used_note_covers_remaining(self, issue, make_order, credit_note_service, customer):
        note = issue("20.00")
        small = make_order(total_owed=Decimal("5.00"))
        first = credit_note_service.apply(note.id, small.id, customer)
        assert first.amount_applied == Decimal("5.00")
        assert first.note.status == CreditNoteStatus.PARTIALLY_USED

        order = make_order(total_owed=Decimal("20.00"))
        result = credit_note_service.apply(note.id, order.id, customer)

        assert result.amount_applied == Decimal("15.00")
        assert result.remaining_credit == Decimal("0")
        assert result.note.status == CreditNoteStatus.FULLY_USED

    def test_application_is_a_ledger_payment(
        self, issue, make_order, credit_note_service, customer, ledger_selector, ledger_service
    ):
        note = issue("20.00")
        order = make_order(total_owed=Decimal("50.00"))

        result = credit_note_service.apply(note.id, order.id, customer)

        entry = ledger_selector.get(result.application.ledger_entry_id)
        assert entry.entry_type == LedgerEntryType.CREDIT_APPLIED.value
        assert entry.amount == Decimal("20.00")
        assert entry.reference_number == note.note_number
        projection = ledger_service.projection.recompute(order.id)
        assert projection.amount_paid == Decimal("20.00")
        assert projection.payment_status == PaymentStatus.PARTIAL

    def test_capped_by_unpaid_balance(self, issue, make_order, pay, credit_note_service, customer):
        note = issue("20.00")
        order = make_order(total_owed=Decimal("100.00"))
        pay(order, Decimal("92.00"))

        result = credit_note_service.apply(note.id, order.id, customer, amount=Decimal("20.00"))

        assert result.amount_applied == Decimal("8.00")
        assert result.note.amount_used == Decimal("8.00")

    def test_paid_order_has_nothing_to_apply(self, issue, make_order, pay, credit_note_service, customer):
        note = issue()
        order = make_order(total_owed=Decimal("10.00"))
        pay(order, Decimal("10.00"))

        with pytest.raises(NothingToApplyError):
            credit_note_service.apply(note.id, order.id, customer)

    def test_draft_not_usable(self, issue, make_order, credit_note_service, customer):
        note = issue(auto_approve=False)
        with pytest.raises(CreditNoteNotUsableError):
            credit_note_service.apply(note.id, make_order().id, customer)

    def test_expired_window_rejected(self, issue, make_order, credit_note_service, customer, deterministic_clock):
        note = issue(valid_days=30)
        order = make_order()
        deterministic_clock.advance(days=31)

        with pytest.raises(CreditNoteExpiredError):
            credit_note_service.apply(note.id, order.id, customer)

    def test_minimum_order_value(self, issue, make_order, credit_note_service, customer):
        note = issue(minimum_order_value=Decimal("50.00"))
        with pytest.raises(MinimumOrderValueError):
            credit_note_service.apply(note.id, make_order(total_owed=Decimal("20.00")).id, customer)

    def test_currency_must_match(self, issue, make_order, credit_note_service, customer):
        note = issue(currency="EUR")
        with pytest.raises(CurrencyMismatchError):
            credit_note_service.apply(note.id, make_order(currency="USD").id, customer)

    def test_other_customer_cannot_use_note(self, issue, make_order, credit_note_service, other_customer):
        note = issue()
        order = make_order(customer_id=other_customer.actor_id)
        with pytest.raises(AccessDeniedError):
            credit_note_service.apply(note.id, order.id, other_customer)

    def test_note_not_usable_on_someone_elses_order(self, issue, make_order, credit_note_service, customer):
        note = issue()
        order = make_order(customer_id=None)
        with pytest.raises(AccessDeniedError):
            credit_note_service.apply(note.id, order.id, customer)


class TestReverse:

    def test_reversal_restores_credit_and_projection(
        self, issue, make_order, credit_note_service, customer, admin, ledger_selector
    ):
        note = issue("20.00")
        order = make_order(total_owed=Decimal("20.00"))
        applied = credit_note_service.apply(note.id, order.id, customer)

        reversed_ = credit_note_service.reverse_application(applied.application.id, admin, "order cancelled")

        assert reversed_.status == ApplicationStatus.REVERSED
        restored = credit_note_service.get(note.id, customer)
        assert restored.amount_used == Decimal("0")
        assert restored.status == CreditNoteStatus.ACTIVE
        compensation = ledger_selector.get(reversed_.reversal_entry_id)
        assert compensation.entry_type == "adjustment"
        assert compensation.amount == Decimal("-20.00")
        assert compensation.related_entry_id == applied.application.ledger_entry_id
        assert ledger_selector.totals(order.id).net_paid == Decimal("0")

    def test_amount_used_matches_live_applications(self, issue, make_order, credit_note_service, customer, admin):
        note = issue("30.00")
        first = credit_note_service.apply(note.id, make_order(total_owed=Decimal("10.00")).id, customer)
        credit_note_service.apply(note.id, make_order(total_owed=Decimal("12.00")).id, customer)
        credit_note_service.reverse_application(first.application.id, admin, "duplicate")

        live = [
            a.applied_amount
            for a in credit_note_service.applications(note.id, admin)
            if a.status == ApplicationStatus.APPLIED
        ]
        current = credit_note_service.get(note.id, admin)

        assert current.amount_used == sum(live, Decimal("0")) == Decimal("12.00")
        assert current.status == CreditNoteStatus.PARTIALLY_USED

    def test_reverse_twice_rejected(self, issue, make_order, credit_note_service, customer, admin):
        note = issue()
        applied = credit_note_service.apply(note.id, make_order().id, customer)
        credit_note_service.reverse_application(applied.application.id, admin, "first")

        with pytest.raises(InvalidTransitionError):
            credit_note_service.reverse_application(applied.application.id, admin, "second")

    def test_customer_cannot_reverse(self, issue, make_order, credit_note_service, customer):
        note = issue()
        applied = credit_note_service.apply(note.id, make_order().id, customer)
        with pytest.raises(AccessDeniedError):
            credit_note_service.reverse_application(applied.application.id, customer, "mine")


class TestAdministration:

    def test_cancel_unused_reverses_issuance(self, issue, credit_note_service, admin, journal_selector):
        note = issue()

        cancelled = credit_note_service.cancel(note.id, admin, "issued in error")

        assert cancelled.status == CreditNoteStatus.CANCELLED
        assert journal_selector.get(note.issuance_transaction_id).status == "reversed"

    def test_cancel_used_note_rejected(self, issue, make_order, credit_note_service, customer, admin):
        note = issue()
        credit_note_service.apply(note.id, make_order(total_owed=Decimal("5.00")).id, customer)

        with pytest.raises(CreditNoteInUseError):
            credit_note_service.cancel(note.id, admin, "too late")

    def test_hold_blocks_use_until_released(self, issue, make_order, credit_note_service, customer, admin):
        note = issue()
        order = make_order()
        credit_note_service.hold(note.id, admin, "fraud review")

        with pytest.raises(CreditNoteNotUsableError):
            credit_note_service.apply(note.id, order.id, customer)

        released = credit_note_service.release(note.id, admin)
        assert released.status == CreditNoteStatus.ACTIVE
        assert credit_note_service.apply(note.id, order.id, customer).amount_applied == Decimal("20.00")

    def test_expire_due_sweeps_past_validity(self, issue, credit_note_service, admin, deterministic_clock):
        short = issue(valid_days=10)
        long_ = issue(valid_days=90)
        deterministic_clock.advance(days=11)

        expired = credit_note_service.expire_due(admin)

        assert [n.id for n in expired] == [short.id]
        assert expired[0].status == CreditNoteStatus.EXPIRED
        assert credit_note_service.get(long_.id, admin).status == CreditNoteStatus.ACTIVE

    def test_extend_reactivates_expired_note(self, issue, credit_note_service, admin, deterministic_clock):
        note = issue(valid_days=10)
        deterministic_clock.advance(days=11)
        credit_note_service.expire_due(admin)

        extended = credit_note_service.extend_validity(note.id, admin, days=30)

        assert extended.status == CreditNoteStatus.ACTIVE
        assert extended.valid_until > deterministic_clock.today()

    def test_available_for_customer_soonest_expiry_first(self, issue, credit_note_service, customer, other_customer):
        later = issue(valid_days=200)
        sooner = issue(valid_days=20)
        issue(customer_id=other_customer.actor_id)

        notes = credit_note_service.available_for_customer(customer.actor_id, customer)

        assert [n.id for n in notes] == [sooner.id, later.id]

    def test_available_for_other_customer_denied(self, credit_note_service, customer, other_customer):
        with pytest.raises(AccessDeniedError):
            credit_note_service.available_for_customer(other_customer.actor_id, customer)

    def test_lookup_by_number(self, issue, credit_note_service, customer, other_customer):
        note = issue()

        assert credit_note_service.get_by_number(note.note_number, customer).id == note.id
        with pytest.raises(AccessDeniedError):
            credit_note_service.get_by_number(note.note_number, other_customer)
        with pytest.raises(CreditNoteNotFoundError):
            credit_note_service.get_by_number("CN-1999-000001", customer)


class TestHistory:

    def test_every_transition_recorded(
        self, issue, make_order, credit_note_service, customer, admin, deterministic_clock
    ):
        note = issue(auto_approve=False)
        deterministic_clock.advance(1)
        credit_note_service.approve(note.id, admin)
        deterministic_clock.advance(1)
        applied = credit_note_service.apply(note.id, make_order(total_owed=Decimal("5.00")).id, customer)
        deterministic_clock.advance(1)
        credit_note_service.reverse_application(applied.application.id, admin, "order cancelled")

        history = credit_note_service.history(note.id, customer)

        assert [h.action for h in history] == [
            CreditNoteAction.CREATED,
            CreditNoteAction.APPROVED,
            CreditNoteAction.PARTIALLY_APPLIED,
            CreditNoteAction.REVERSED,
        ]
        assert history[1].previous_status == CreditNoteStatus.DRAFT
        assert history[1].new_status == CreditNoteStatus.ACTIVE
        assert history[2].amount_change == Decimal("5.00")
        assert history[3].amount_change == Decimal("-5.00")

    def test_history_rows_are_append_only(self, issue, session):
        note = issue()
        row = session.execute(
            select(CreditNoteHistoryModel).where(CreditNoteHistoryModel.credit_note_id == note.id)
        ).scalars().first()

        row.description = "rewritten"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
