"""
payment_modules.reconciliation.models
=====================================

Responsibility:
    Vocabulary of the reconciliation engine: session and item statuses,
    match types, discrepancy resolution actions, the normalised
    ``StatementLine`` every parser produces, and the frozen DTOs returned
    by ``ReconciliationService``.

Architecture:
    Module layer.  In-memory value objects, NOT ORM models (see ``orm.py``).

Invariants enforced:
    - All monetary fields are ``Decimal``; all DTOs are frozen.
    - matched_count + unmatched_count == total_items on every session DTO.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ReconciliationStatus(str, Enum):
    """See ``workflows.RECONCILIATION_WORKFLOW``."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISCREPANCY_FOUND = "discrepancy_found"


class ItemSide(str, Enum):
    SYSTEM = "system"        # seeded from a ledger entry
    STATEMENT = "statement"  # imported statement line


class MatchType(str, Enum):
    UNMATCHED = "unmatched"
    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"


class ItemStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    DISCREPANCY = "discrepancy"


class ResolutionAction(str, Enum):
    ACCEPT_DIFFERENCE = "accept_difference"
    CREATE_ADJUSTMENT = "create_adjustment"
    INVESTIGATE = "investigate"
    WRITE_OFF = "write_off"
    PENDING_TRANSACTION = "pending_transaction"


@dataclass(frozen=True)
class StatementLine:
    """
    One external statement line in the common import format.

    ``amount`` is signed: credits (money in) positive, debits negative.
    """
    date: date
    amount: Decimal
    reference: str | None = None
    description: str | None = None
    transaction_type: str = "UNKNOWN"


@dataclass(frozen=True)
class ReconciliationItemInfo:
    id: UUID
    session_id: UUID
    side: ItemSide
    position: int
    ledger_entry_id: UUID | None
    item_date: date
    amount: Decimal
    reference: str | None
    description: str | None
    matched: bool
    match_type: MatchType
    match_confidence: Decimal | None
    matched_with_id: UUID | None
    status: ItemStatus
    discrepancy_reason: str | None = None
    resolution_action: ResolutionAction | None = None


@dataclass(frozen=True)
class ReconciliationSessionInfo:
    id: UUID
    payment_method: str
    gateway_code: str | None
    statement_date: date
    statement_start_date: date
    statement_end_date: date
    status: ReconciliationStatus
    opening_balance: Decimal
    statement_closing_balance: Decimal | None
    system_total_credits: Decimal
    system_total_debits: Decimal
    system_closing_balance: Decimal
    statement_total_credits: Decimal
    statement_total_debits: Decimal
    closing_difference: Decimal | None
    total_items: int
    matched_count: int
    unmatched_system_count: int
    unmatched_statement_count: int
    total_matched_amount: Decimal
    notes: str | None = None

    @property
    def unmatched_count(self) -> int:
        return self.unmatched_system_count + self.unmatched_statement_count


@dataclass(frozen=True)
class MatchPairInfo:
    statement_item_id: UUID
    system_item_id: UUID
    match_type: MatchType
    confidence: Decimal
    ambiguous: bool = False


@dataclass(frozen=True)
class MatchRunResult:
    """Outcome of one auto or fuzzy matching pass."""
    session_id: UUID
    pairs: tuple[MatchPairInfo, ...]
    remaining_unmatched: int

    @property
    def matched_count(self) -> int:
        return len(self.pairs)

    @property
    def ambiguous_count(self) -> int:
        return sum(1 for p in self.pairs if p.ambiguous)
