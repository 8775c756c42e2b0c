"""
payment_modules.reconciliation.matching -- statement/ledger pairing rules.

Responsibility:
    Pair statement-side items with system-side items: the exact pass
    (equal amount and equal reference or equal date) and the fuzzy pass
    (amount and date within tolerances, scored).

Architecture position:
    Module layer -- pure calculation, zero I/O.  ``ReconciliationService``
    loads the unmatched items in position order and persists the pairs.

Invariants enforced:
    - Each item appears in at most one pair per pass.
    - Greedy single pass in statement order; the exact pass takes the first
      qualifying system item and reports whether others also qualified
      (``ambiguous``) without choosing between them.
    - Identical inputs give identical outputs.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

EXACT_CONFIDENCE = Decimal("1.00")
FUZZY_CEILING = Decimal("0.95")
FUZZY_FLOOR = Decimal("0.50")


@dataclass(frozen=True)
class MatchCandidate:
    """An unmatched reconciliation item reduced to what matching reads."""

    item_id: UUID
    amount: Decimal
    reference: str | None
    on_date: date


@dataclass(frozen=True)
class MatchTolerance:
    amount: Decimal = Decimal("0.01")
    days: int = 3

    def __post_init__(self):
        if self.amount < 0 or self.days < 0:
            raise ValueError("match tolerances cannot be negative")


@dataclass(frozen=True)
class ProposedMatch:
    statement_item_id: UUID
    system_item_id: UUID
    confidence: Decimal
    ambiguous: bool = False


def _same_reference(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


def exact_matches(
    statement: Sequence[MatchCandidate],
    system: Sequence[MatchCandidate],
) -> list[ProposedMatch]:
    """
    Equal amount and (equal reference or equal date).  First match wins.
    """
    taken: set[UUID] = set()
    matches: list[ProposedMatch] = []
    for line in statement:
        qualifying = [
            s for s in system
            if s.item_id not in taken
            and s.amount == line.amount
            and (_same_reference(s.reference, line.reference) or s.on_date == line.on_date)
        ]
        if not qualifying:
            continue
        chosen = qualifying[0]
        taken.add(chosen.item_id)
        matches.append(
            ProposedMatch(
                statement_item_id=line.item_id,
                system_item_id=chosen.item_id,
                confidence=EXACT_CONFIDENCE,
                ambiguous=len(qualifying) > 1,
            )
        )
    return matches


def fuzzy_confidence(amount_diff: Decimal, day_diff: int, tolerance: MatchTolerance) -> Decimal:
    """
    Confidence in [0.50, 0.95]: the ceiling less up to 0.25 for the amount
    gap and up to 0.20 for the date gap, each scaled to its tolerance.
    """
    penalty = Decimal("0")
    if tolerance.amount > 0:
        penalty += Decimal("0.25") * (abs(amount_diff) / tolerance.amount)
    if tolerance.days > 0:
        penalty += Decimal("0.20") * (Decimal(abs(day_diff)) / Decimal(tolerance.days))
    score = FUZZY_CEILING - penalty
    return max(FUZZY_FLOOR, score).quantize(Decimal("0.01"))


def fuzzy_matches(
    statement: Sequence[MatchCandidate],
    system: Sequence[MatchCandidate],
    tolerance: MatchTolerance,
) -> list[ProposedMatch]:
    """
    Pair each statement item with the closest remaining system item whose
    amount and date fall inside the tolerances.  Closest means smallest
    amount gap, then smallest date gap, then earliest position.
    """
    taken: set[UUID] = set()
    matches: list[ProposedMatch] = []
    for line in statement:
        best: tuple[Decimal, int, int] | None = None
        best_item: MatchCandidate | None = None
        for position, s in enumerate(system):
            if s.item_id in taken:
                continue
            amount_diff = abs(s.amount - line.amount)
            day_diff = abs((s.on_date - line.on_date).days)
            if amount_diff > tolerance.amount or day_diff > tolerance.days:
                continue
            key = (amount_diff, day_diff, position)
            if best is None or key < best:
                best, best_item = key, s
        if best_item is None:
            continue
        taken.add(best_item.item_id)
        matches.append(
            ProposedMatch(
                statement_item_id=line.item_id,
                system_item_id=best_item.item_id,
                confidence=fuzzy_confidence(best[0], best[1], tolerance),
            )
        )
    return matches
