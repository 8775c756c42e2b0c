"""Pure tests for LIFO refund allocation and approval trimming."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from payment_modules.refunds.allocation import RefundCandidate, allocate_lifo, newest_first, trim_to
from payment_modules.refunds.workflows import aggregate_request_status
from payment_modules.refunds.models import RefundRequestStatus

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def _candidate(unrefunded: str, minutes: int, sequence: int) -> RefundCandidate:
    return RefundCandidate(
        payment_entry_id=uuid4(),
        recorded_at=T0 + timedelta(minutes=minutes),
        sequence=sequence,
        unrefunded=Decimal(unrefunded),
    )


class TestAllocateLifo:

    def test_newest_payment_consumed_first(self):
        older = _candidate("60.00", 0, 1)
        newer = _candidate("40.00", 5, 2)

        plan = allocate_lifo(Decimal("50.00"), [older, newer])

        assert [line.payment_entry_id for line in plan.lines] == [newer.payment_entry_id, older.payment_entry_id]
        assert [line.allocated for line in plan.lines] == [Decimal("40.00"), Decimal("10.00")]
        assert plan.lines[1].remaining_unrefunded == Decimal("50.00")
        assert plan.is_complete

    def test_exhausted_payments_skipped(self):
        spent = _candidate("0", 10, 3)
        open_ = _candidate("25.00", 0, 1)

        plan = allocate_lifo(Decimal("20.00"), [spent, open_])

        assert [line.payment_entry_id for line in plan.lines] == [open_.payment_entry_id]

    def test_shortfall_reported(self):
        plan = allocate_lifo(Decimal("150.00"), [_candidate("100.00", 0, 1)])

        assert not plan.is_complete
        assert plan.shortfall == Decimal("50.00")
        assert plan.allocated + plan.shortfall == plan.requested

    def test_timestamp_tie_broken_by_sequence(self):
        a = _candidate("10.00", 0, 7)
        b = _candidate("10.00", 0, 8)
        assert newest_first([a, b])[0] is b

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValueError):
            allocate_lifo(Decimal("0"), [_candidate("10.00", 0, 1)])


class TestTrimTo:

    def test_cuts_first_overshooting_line(self):
        assert trim_to([Decimal("40"), Decimal("10")], Decimal("45")) == [Decimal("40"), Decimal("5")]

    def test_later_lines_drop_to_zero(self):
        assert trim_to([Decimal("40"), Decimal("10")], Decimal("30")) == [Decimal("30"), Decimal("0")]

    def test_negative_target_rejected(self):
        with pytest.raises(ValueError):
            trim_to([Decimal("1")], Decimal("-1"))


class TestAggregateStatus:

    @pytest.mark.parametrize(
        "statuses, expected",
        [
            (["completed", "completed"], RefundRequestStatus.COMPLETED),
            (["failed", "failed"], RefundRequestStatus.FAILED),
            (["completed", "failed"], RefundRequestStatus.PARTIALLY_COMPLETED),
            (["completed", "cancelled"], RefundRequestStatus.COMPLETED),
            (["cancelled", "cancelled"], RefundRequestStatus.CANCELLED),
            (["completed", "processing"], None),
        ],
    )
    def test_aggregation(self, statuses, expected):
        assert aggregate_request_status(statuses) == expected
