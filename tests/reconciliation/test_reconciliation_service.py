"""
Reconciliation sessions over real ledger entries.

All payments land on 2024-03-15 (the deterministic clock's day) through
the stripe gateway unless a test says otherwise.
"""

from datetime import date
from decimal import Decimal

import pytest

from payment_kernel.exceptions import (
    AccessDeniedError,
    InvalidTransitionError,
    ItemAlreadyMatchedError,
    ItemSideMismatchError,
    ReconciliationNotInProgressError,
    StatementParseError,
    ValidationError,
)
from payment_kernel.models.ledger import LedgerEntryType
from payment_modules.reconciliation import (
    ItemSide,
    ItemStatus,
    MatchType,
    ReconciliationStatus,
    ResolutionAction,
    StatementLine,
)

DAY = date(2024, 3, 15)


@pytest.fixture
def settled_day(make_order, pay, ledger_service, test_actor_id):
    """Two stripe payments, one stripe refund and one payu payment."""
    order = make_order(total_owed=Decimal("300.00"))
    first = pay(order, Decimal("100.00"), reference="INV-1")
    second = pay(order, Decimal("50.00"), reference="INV-2")
    refund = ledger_service.write(
        order_id=order.id,
        entry_type=LedgerEntryType.PARTIAL_REFUND,
        amount=Decimal("20.00"),
        currency="USD",
        actor_id=test_actor_id,
        payment_method="stripe",
        gateway_code="stripe",
        reference_number="RF-1",
        related_entry_id=first.entry_id,
    )
    pay(order, Decimal("75.00"), gateway="payu", reference="PAYU-1")
    return {"first": first, "second": second, "refund": refund}


@pytest.fixture
def recon(reconciliation_service, admin, settled_day):
    return reconciliation_service.start_session(
        payment_method="stripe",
        gateway_code="stripe",
        start_date=DAY,
        end_date=DAY,
        principal=admin,
    )


def _statement(*rows):
    return [StatementLine(date=d, amount=Decimal(a), reference=r) for d, a, r in rows]


class TestStartSession:

    def test_system_totals_for_scope(self, recon):
        assert recon.status == ReconciliationStatus.IN_PROGRESS
        assert recon.system_total_credits == Decimal("150.00")
        assert recon.system_total_debits == Decimal("20.00")
        assert recon.system_closing_balance == Decimal("130.00")
        assert recon.statement_date == DAY

    def test_one_system_item_per_entry(self, reconciliation_service, admin, recon, settled_day):
        items = reconciliation_service.items(recon.id, admin, side=ItemSide.SYSTEM)

        assert [i.amount for i in items] == [Decimal("100.00"), Decimal("50.00"), Decimal("-20.00")]
        assert items[0].ledger_entry_id == settled_day["first"].entry_id
        assert items[0].reference == "INV-1"
        assert all(i.match_type == MatchType.UNMATCHED for i in items)
        assert recon.total_items == 3
        assert recon.unmatched_count == 3

    def test_other_days_excluded(self, reconciliation_service, admin, settled_day):
        info = reconciliation_service.start_session(
            payment_method="stripe",
            start_date=date(2024, 3, 16),
            end_date=date(2024, 3, 31),
            principal=admin,
        )
        assert info.total_items == 0

    def test_inverted_range_rejected(self, reconciliation_service, admin):
        with pytest.raises(ValidationError):
            reconciliation_service.start_session(
                payment_method="stripe",
                start_date=DAY,
                end_date=date(2024, 3, 1),
                principal=admin,
            )

    def test_admin_only(self, reconciliation_service, customer):
        with pytest.raises(AccessDeniedError):
            reconciliation_service.start_session(
                payment_method="stripe", start_date=DAY, end_date=DAY, principal=customer,
            )


class TestImport:

    def test_statement_totals_and_difference(self, reconciliation_service, admin, recon):
        info = reconciliation_service.import_statement(
            recon.id,
            _statement((DAY, "100.00", "INV-1"), (DAY, "50.00", "INV-2"), (DAY, "-20.00", "RF-1")),
            admin,
        )

        assert info.statement_total_credits == Decimal("150.00")
        assert info.statement_total_debits == Decimal("20.00")
        assert info.statement_closing_balance == Decimal("130.00")
        assert info.closing_difference == Decimal("0.00")
        assert info.total_items == 6

    def test_explicit_closing_balance(self, reconciliation_service, admin, recon):
        info = reconciliation_service.import_statement(
            recon.id, _statement((DAY, "100.00", "INV-1")), admin, closing_balance=Decimal("131.00"),
        )
        assert info.closing_difference == Decimal("1.00")

    def test_text_import(self, reconciliation_service, admin, recon):
        raw = "2024-03-15|100.00|INV-1|settlement|C\n2024-03-15|20.00|RF-1|refund|D\n"
        info = reconciliation_service.import_statement_text(recon.id, raw, "mt940", admin)

        statement = reconciliation_service.items(recon.id, admin, side="statement")
        assert [i.amount for i in statement] == [Decimal("100.00"), Decimal("-20.00")]
        assert [i.position for i in statement] == [4, 5]
        assert info.statement_total_debits == Decimal("20.00")

    def test_malformed_text_imports_nothing(self, reconciliation_service, admin, recon):
        with pytest.raises(StatementParseError):
            reconciliation_service.import_statement_text(recon.id, "garbage", "MT940", admin)
        assert reconciliation_service.get_session(recon.id, admin).total_items == 3


class TestMatching:

    def test_exact_pass_pairs_by_reference(self, reconciliation_service, admin, recon):
        reconciliation_service.import_statement(
            recon.id,
            _statement((date(2024, 3, 17), "100.00", "INV-1"), (DAY, "-20.00", "RF-1")),
            admin,
        )

        result = reconciliation_service.auto_match(recon.id, admin)

        assert result.matched_count == 2
        assert result.remaining_unmatched == 1
        assert all(p.match_type == MatchType.EXACT for p in result.pairs)
        info = reconciliation_service.get_session(recon.id, admin)
        assert info.matched_count == 4
        assert info.total_matched_amount == Decimal("80.00")
        assert info.matched_count + info.unmatched_count == info.total_items

    def test_pair_links_both_sides(self, reconciliation_service, admin, recon):
        reconciliation_service.import_statement(recon.id, _statement((DAY, "50.00", None)), admin)

        [pair] = reconciliation_service.auto_match(recon.id, admin).pairs

        items = {i.id: i for i in reconciliation_service.items(recon.id, admin)}
        assert items[pair.statement_item_id].matched_with_id == pair.system_item_id
        assert items[pair.system_item_id].matched_with_id == pair.statement_item_id
        assert items[pair.system_item_id].status == ItemStatus.MATCHED

    def test_fuzzy_pass_after_exact(self, reconciliation_service, admin, recon):
        reconciliation_service.import_statement(
            recon.id,
            _statement((DAY, "100.00", "INV-1"), (date(2024, 3, 16), "49.99", "BANK-7")),
            admin,
        )
        reconciliation_service.auto_match(recon.id, admin)

        result = reconciliation_service.fuzzy_match(recon.id, admin)

        [pair] = result.pairs
        assert pair.match_type == MatchType.FUZZY
        assert pair.confidence == Decimal("0.63")

    def test_manual_match_records_pair(self, reconciliation_service, admin, recon):
        reconciliation_service.import_statement(recon.id, _statement((DAY, "-19.00", "card")), admin)
        statement = reconciliation_service.items(recon.id, admin, side=ItemSide.STATEMENT)[0]
        refund_item = reconciliation_service.items(recon.id, admin, side=ItemSide.SYSTEM)[2]

        pair = reconciliation_service.manual_match(recon.id, statement.id, refund_item.id, admin)

        assert pair.match_type == MatchType.MANUAL
        assert reconciliation_service.get_session(recon.id, admin).unmatched_statement_count == 0

    def test_manual_match_checks_sides(self, reconciliation_service, admin, recon):
        system = reconciliation_service.items(recon.id, admin, side=ItemSide.SYSTEM)
        with pytest.raises(ItemSideMismatchError):
            reconciliation_service.manual_match(recon.id, system[0].id, system[1].id, admin)

    def test_matched_item_cannot_be_rematched(self, reconciliation_service, admin, recon):
        reconciliation_service.import_statement(
            recon.id, _statement((DAY, "100.00", "INV-1"), (DAY, "100.00", "dup")), admin,
        )
        reconciliation_service.auto_match(recon.id, admin)
        loose = reconciliation_service.items(recon.id, admin, side=ItemSide.STATEMENT, unmatched_only=True)[0]
        taken = reconciliation_service.items(recon.id, admin, side=ItemSide.SYSTEM)[0]

        with pytest.raises(ItemAlreadyMatchedError):
            reconciliation_service.manual_match(recon.id, loose.id, taken.id, admin)

    def test_unmatch_releases_both_sides(self, reconciliation_service, admin, recon):
        reconciliation_service.import_statement(recon.id, _statement((DAY, "100.00", "INV-1")), admin)
        [pair] = reconciliation_service.auto_match(recon.id, admin).pairs

        item = reconciliation_service.unmatch(pair.statement_item_id, admin)

        assert not item.matched
        assert item.match_type == MatchType.UNMATCHED
        info = reconciliation_service.get_session(recon.id, admin)
        assert info.matched_count == 0
        assert info.unmatched_count == 4

    def test_unmatch_of_unmatched_item(self, reconciliation_service, admin, recon):
        item = reconciliation_service.items(recon.id, admin)[0]
        with pytest.raises(ValidationError):
            reconciliation_service.unmatch(item.id, admin)


class TestDiscrepancies:

    def test_flag_keeps_item_unmatched(self, reconciliation_service, admin, recon):
        item = reconciliation_service.items(recon.id, admin)[1]

        flagged = reconciliation_service.flag_discrepancy(
            item.id, admin, "not on statement", ResolutionAction.PENDING_TRANSACTION,
        )

        assert flagged.status == ItemStatus.DISCREPANCY
        assert flagged.resolution_action == ResolutionAction.PENDING_TRANSACTION
        assert not flagged.matched

    def test_unknown_action_rejected(self, reconciliation_service, admin, recon):
        item = reconciliation_service.items(recon.id, admin)[0]
        with pytest.raises(ValueError):
            reconciliation_service.flag_discrepancy(item.id, admin, "?", "ignore")


class TestComplete:

    def _fully_matched(self, service, admin, recon, *, refund_amount="-20.00"):
        service.import_statement(
            recon.id,
            _statement((DAY, "100.00", "INV-1"), (DAY, "50.00", "INV-2"), (DAY, refund_amount, "RF-1")),
            admin,
        )
        service.auto_match(recon.id, admin)
        service.fuzzy_match(recon.id, admin)

    def test_balanced_session_completes(self, reconciliation_service, admin, recon):
        self._fully_matched(reconciliation_service, admin, recon)

        info = reconciliation_service.complete(recon.id, admin, notes="March 15 close")

        assert info.status == ReconciliationStatus.COMPLETED
        assert info.notes == "March 15 close"

    def test_unmatched_items_give_discrepancy(self, reconciliation_service, admin, recon):
        info = reconciliation_service.complete(recon.id, admin)
        assert info.status == ReconciliationStatus.DISCREPANCY_FOUND

    def test_difference_at_tolerance_is_not_balanced(self, reconciliation_service, admin, recon):
        self._fully_matched(reconciliation_service, admin, recon, refund_amount="-20.01")

        info = reconciliation_service.complete(recon.id, admin)

        assert info.unmatched_count == 0
        assert info.closing_difference == Decimal("-0.01")
        assert info.status == ReconciliationStatus.DISCREPANCY_FOUND

    def test_closed_session_rejects_work(self, reconciliation_service, admin, recon):
        reconciliation_service.complete(recon.id, admin)
        with pytest.raises(ReconciliationNotInProgressError):
            reconciliation_service.auto_match(recon.id, admin)

    def test_reopen_then_complete(self, reconciliation_service, admin, recon):
        reconciliation_service.complete(recon.id, admin)
        reopened = reconciliation_service.reopen(recon.id, admin, "statement re-issued")
        assert reopened.status == ReconciliationStatus.IN_PROGRESS
        assert "Reopened: statement re-issued" in reopened.notes

        self._fully_matched(reconciliation_service, admin, recon)
        assert reconciliation_service.complete(recon.id, admin).status == ReconciliationStatus.COMPLETED

    def test_completed_session_is_final(self, reconciliation_service, admin, recon):
        self._fully_matched(reconciliation_service, admin, recon)
        reconciliation_service.complete(recon.id, admin)
        with pytest.raises(InvalidTransitionError):
            reconciliation_service.reopen(recon.id, admin, "too late")

    def test_completion_logged(self, reconciliation_service, admin, recon, captured_logs):
        reconciliation_service.complete(recon.id, admin)
        events = [r for r in captured_logs() if r["message"] == "reconciliation_session_completed"]
        assert events and events[0]["level"] == "WARNING"
