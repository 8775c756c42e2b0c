"""
payment_modules.credit_notes.models
===================================

Responsibility:
    Vocabulary of the credit note manager: note types, statuses, history
    actions and the frozen DTOs returned by ``CreditNoteService``.

Architecture:
    Module layer.  In-memory value objects, NOT ORM models (see ``orm.py``).

Invariants enforced:
    - ``amount_available`` is derived (amount - amount_used), never stored.
    - All monetary fields are ``Decimal``; all DTOs are frozen.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class CreditNoteType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class CreditNoteStatus(str, Enum):
    """See ``workflows.CREDIT_NOTE_WORKFLOW``."""
    DRAFT = "draft"
    ACTIVE = "active"
    PARTIALLY_USED = "partially_used"
    FULLY_USED = "fully_used"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


USABLE_STATUSES = frozenset({CreditNoteStatus.ACTIVE.value, CreditNoteStatus.PARTIALLY_USED.value})


class CreditNoteAction(str, Enum):
    """History row actions."""
    CREATED = "created"
    APPROVED = "approved"
    APPLIED = "applied"
    PARTIALLY_APPLIED = "partially_applied"
    REVERSED = "reversed"
    EXTENDED = "extended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    HELD = "held"
    RELEASED = "released"


class ApplicationStatus(str, Enum):
    APPLIED = "applied"
    REVERSED = "reversed"


@dataclass(frozen=True)
class CreditNoteInfo:
    id: UUID
    note_number: str
    note_type: CreditNoteType
    customer_id: UUID
    amount: Decimal
    currency: str
    amount_used: Decimal
    status: CreditNoteStatus
    reason: str
    valid_from: date
    valid_until: date | None
    minimum_order_value: Decimal | None = None
    order_id: UUID | None = None
    refund_request_id: UUID | None = None
    issuance_transaction_id: UUID | None = None

    @property
    def amount_available(self) -> Decimal:
        return self.amount - self.amount_used


@dataclass(frozen=True)
class CreditNoteApplicationInfo:
    id: UUID
    credit_note_id: UUID
    order_id: UUID
    applied_amount: Decimal
    currency: str
    status: ApplicationStatus
    ledger_entry_id: UUID | None
    applied_by_id: UUID
    applied_at: datetime
    reversal_entry_id: UUID | None = None
    reversal_reason: str | None = None
    reversed_at: datetime | None = None


@dataclass(frozen=True)
class CreditApplicationResult:
    """Outcome of ``CreditNoteService.apply``."""
    application: CreditNoteApplicationInfo
    note: CreditNoteInfo

    @property
    def amount_applied(self) -> Decimal:
        return self.application.applied_amount

    @property
    def remaining_credit(self) -> Decimal:
        return self.note.amount_available


@dataclass(frozen=True)
class CreditNoteHistoryInfo:
    credit_note_id: UUID
    action: CreditNoteAction
    previous_status: CreditNoteStatus | None
    new_status: CreditNoteStatus | None
    amount_change: Decimal | None
    description: str | None
    performed_by_id: UUID
    performed_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
