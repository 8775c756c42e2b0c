"""
Hypothesis property tests for the pure money rules.

Boundaries fuzzed here:
- Refund allocation: conservation, per-payment caps, newest-first order
- Approval trimming: never grows a line, sums to the target
- Projection classification: status agrees with the paid/total relation
- Fuzzy match confidence: stays inside its band, falls as gaps grow

Database-backed invariants (ledger conservation, idempotent webhooks)
are covered by the service tests.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st

from payment_kernel.domain.projection import PaymentStatus, classify
from payment_modules.reconciliation.matching import MatchTolerance, fuzzy_confidence
from payment_modules.refunds.allocation import RefundCandidate, allocate_lifo, trim_to

TOL = Decimal("0.01")
T0 = datetime(2024, 1, 1, tzinfo=UTC)

money = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("100000"), places=2)
balances = st.decimals(min_value=Decimal("0"), max_value=Decimal("5000"), places=2)


@st.composite
def candidates(draw):
    amounts = draw(st.lists(balances, min_size=1, max_size=8))
    offsets = draw(st.lists(st.integers(0, 10_000), min_size=len(amounts), max_size=len(amounts)))
    return [
        RefundCandidate(
            payment_entry_id=uuid4(),
            recorded_at=T0 + timedelta(minutes=offset),
            sequence=index + 1,
            unrefunded=amount,
        )
        for index, (amount, offset) in enumerate(zip(amounts, offsets))
    ]


class TestAllocationProperties:

    @given(money, candidates())
    @settings(max_examples=200)
    def test_allocated_plus_shortfall_is_requested(self, requested, pool):
        plan = allocate_lifo(requested, pool)
        assert plan.allocated + plan.shortfall == requested
        assert plan.shortfall >= 0

    @given(money, candidates())
    def test_no_payment_over_allocated(self, requested, pool):
        available = {c.payment_entry_id: c.unrefunded for c in pool}
        plan = allocate_lifo(requested, pool)
        for line in plan.lines:
            assert Decimal("0") < line.allocated <= available[line.payment_entry_id]
            assert line.remaining_unrefunded == available[line.payment_entry_id] - line.allocated

    @given(money, candidates())
    def test_older_payment_touched_only_after_newer_exhausted(self, requested, pool):
        available = {c.payment_entry_id: c.unrefunded for c in pool}
        plan = allocate_lifo(requested, pool)
        for line in plan.lines[:-1]:
            assert line.allocated == available[line.payment_entry_id]

    @given(st.lists(money, min_size=1, max_size=6), st.data())
    def test_trim_never_grows_and_hits_target(self, lines, data):
        target = data.draw(st.decimals(min_value=Decimal("0"), max_value=sum(lines), places=2))
        trimmed = trim_to(lines, target)
        assert sum(trimmed) == target
        assert all(Decimal("0") <= new <= old for new, old in zip(trimmed, lines))


class TestClassificationProperties:

    @given(money, st.decimals(min_value=Decimal("0"), max_value=Decimal("200000"), places=2))
    def test_status_matches_paid_relation(self, total, paid):
        result = classify(total, paid, TOL)
        if abs(paid) < TOL:
            assert result.status == PaymentStatus.UNPAID
        elif abs(paid - total) < TOL:
            assert result.status == PaymentStatus.PAID
        elif paid < total:
            assert result.status == PaymentStatus.PARTIAL
        else:
            assert result.status == PaymentStatus.OVERPAID
            assert result.overpayment_amount == paid - total
        assert not result.requires_review

    @given(money, st.decimals(min_value=Decimal("-5000"), max_value=Decimal("-0.01"), places=2))
    def test_negative_sums_always_flagged(self, total, paid):
        assert classify(total, paid, TOL).requires_review


class TestFuzzyConfidenceProperties:

    @given(
        st.decimals(min_value=Decimal("0"), max_value=Decimal("1.00"), places=2),
        st.integers(0, 7),
    )
    def test_inside_band(self, amount_diff, day_diff):
        score = fuzzy_confidence(amount_diff, day_diff, MatchTolerance(Decimal("1.00"), 7))
        assert Decimal("0.50") <= score <= Decimal("0.95")

    @given(st.integers(0, 6))
    def test_monotonic_in_date_gap(self, day_diff):
        tolerance = MatchTolerance(Decimal("1.00"), 7)
        assert fuzzy_confidence(Decimal("0"), day_diff + 1, tolerance) <= fuzzy_confidence(
            Decimal("0"), day_diff, tolerance,
        )
