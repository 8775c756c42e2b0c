"""
Module: payment_modules.refunds.allocation
Responsibility:
    Allocate a refund amount across prior customer payments, most recent
    first (LIFO), and trim an allocation down to an approved amount.

Architecture position:
    Module layer -- pure calculation, zero I/O.  ``RefundService`` supplies
    the candidates (read from the Ledger Store with their reservations) and
    persists the result.

Invariants enforced:
    - No line exceeds its payment's unrefunded amount.
    - sum(lines) + shortfall == requested amount.
    - Candidates are consumed newest first: (recorded_at, sequence)
      descending, so ties on timestamp resolve deterministically.

Failure modes:
    - ValueError for a non-positive amount.  A shortfall is reported, not
      raised; the service turns it into RefundExceedsRefundableError.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

ZERO = Decimal("0")


@dataclass(frozen=True)
class RefundCandidate:
    """A completed customer payment that can absorb part of a refund."""

    payment_entry_id: UUID
    recorded_at: datetime
    sequence: int
    unrefunded: Decimal


@dataclass(frozen=True)
class AllocationLine:
    payment_entry_id: UUID
    allocated: Decimal
    remaining_unrefunded: Decimal


@dataclass(frozen=True)
class AllocationPlan:
    requested: Decimal
    lines: tuple[AllocationLine, ...]

    @property
    def allocated(self) -> Decimal:
        return sum((line.allocated for line in self.lines), ZERO)

    @property
    def shortfall(self) -> Decimal:
        return self.requested - self.allocated

    @property
    def is_complete(self) -> bool:
        return self.shortfall <= ZERO


def newest_first(candidates: Sequence[RefundCandidate]) -> list[RefundCandidate]:
    return sorted(candidates, key=lambda c: (c.recorded_at, c.sequence), reverse=True)


def allocate_lifo(amount: Decimal, candidates: Sequence[RefundCandidate]) -> AllocationPlan:
    """
    Walk payments newest to oldest taking ``min(remaining, unrefunded)``
    from each until the amount is exhausted or payments run out.
    """
    if amount <= ZERO:
        raise ValueError("refund amount must be positive")

    remaining = amount
    lines: list[AllocationLine] = []
    for candidate in newest_first(candidates):
        if remaining <= ZERO:
            break
        if candidate.unrefunded <= ZERO:
            continue
        take = min(remaining, candidate.unrefunded)
        lines.append(
            AllocationLine(
                payment_entry_id=candidate.payment_entry_id,
                allocated=take,
                remaining_unrefunded=candidate.unrefunded - take,
            )
        )
        remaining -= take
    return AllocationPlan(requested=amount, lines=tuple(lines))


def trim_to(amounts: Sequence[Decimal], target: Decimal) -> list[Decimal]:
    """
    Reduce allocations (in allocation order) so they sum to ``target``.

    Earlier allocations are kept whole; the first one that would overshoot
    is cut, and every later one drops to zero.
    """
    if target < ZERO:
        raise ValueError("target cannot be negative")
    budget = target
    trimmed: list[Decimal] = []
    for amount in amounts:
        take = min(amount, budget)
        trimmed.append(take)
        budget -= take
    return trimmed
