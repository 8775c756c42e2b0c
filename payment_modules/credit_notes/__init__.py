"""
payment_modules.credit_notes
============================

Responsibility:
    Store-credit instruments: issuance with year-scoped note numbers,
    balance tracking, application to orders as an alternate payment
    source, reversal, cancellation and expiry.

Architecture:
    Module layer.  May import from payment_kernel and payment_config.
    MUST NOT be imported by payment_kernel (the immutability listeners
    reach the history table through ``payment_modules._orm_registry``).

Invariants enforced:
    - amount_used == sum of non-reversed applications <= amount.
    - The history table is append-only.
"""

from payment_modules.credit_notes.models import (
    ApplicationStatus,
    CreditApplicationResult,
    CreditNoteAction,
    CreditNoteApplicationInfo,
    CreditNoteHistoryInfo,
    CreditNoteInfo,
    CreditNoteStatus,
    CreditNoteType,
)
from payment_modules.credit_notes.service import CreditNoteService
from payment_modules.credit_notes.workflows import CREDIT_NOTE_WORKFLOW

__all__ = [
    "ApplicationStatus",
    "CREDIT_NOTE_WORKFLOW",
    "CreditApplicationResult",
    "CreditNoteAction",
    "CreditNoteApplicationInfo",
    "CreditNoteHistoryInfo",
    "CreditNoteInfo",
    "CreditNoteService",
    "CreditNoteStatus",
    "CreditNoteType",
]
