"""
payment_modules.credit_notes.workflows
======================================

Responsibility:
    Declarative state machine for credit notes.

Architecture:
    Module layer.  Pure data declarations.

Audit relevance:
    ``posts_entry=True`` marks transitions that post the issuance journal.
    Application and reversal post through the ledger, not through these
    transitions.
"""

from payment_kernel.domain.workflow import Guard, Transition, Workflow

from payment_modules.credit_notes.models import CreditNoteStatus

# Guards evaluated by CreditNoteService.
EXHAUSTED = Guard(
    name="exhausted",
    description="amount_used reaches the note amount",
)
UNUSED = Guard(
    name="unused",
    description="amount_used is zero",
)

CREDIT_NOTE_STATES = tuple(s.value for s in CreditNoteStatus)

CREDIT_NOTE_TRANSITIONS = (
    Transition("draft", "active", action="approve", posts_entry=True),
    Transition("draft", "cancelled", action="cancel"),
    # apply: guarded edge first, fallback second
    Transition("active", "fully_used", action="apply", guard=EXHAUSTED),
    Transition("active", "partially_used", action="apply"),
    Transition("partially_used", "fully_used", action="apply", guard=EXHAUSTED),
    Transition("partially_used", "partially_used", action="apply"),
    # reverse_application
    Transition("fully_used", "active", action="reverse", guard=UNUSED),
    Transition("fully_used", "partially_used", action="reverse"),
    Transition("partially_used", "active", action="reverse", guard=UNUSED),
    Transition("partially_used", "partially_used", action="reverse"),
    Transition("expired", "expired", action="reverse"),
    Transition("on_hold", "on_hold", action="reverse"),
    Transition("active", "cancelled", action="cancel", guard=UNUSED),
    Transition("on_hold", "cancelled", action="cancel", guard=UNUSED),
    Transition("expired", "cancelled", action="cancel", guard=UNUSED),
    Transition("active", "on_hold", action="hold"),
    Transition("partially_used", "on_hold", action="hold"),
    Transition("on_hold", "active", action="release", guard=UNUSED),
    Transition("on_hold", "partially_used", action="release"),
    Transition("active", "expired", action="expire"),
    Transition("partially_used", "expired", action="expire"),
    Transition("on_hold", "expired", action="expire"),
    Transition("expired", "active", action="extend", guard=UNUSED),
    Transition("expired", "partially_used", action="extend"),
)

CREDIT_NOTE_WORKFLOW = Workflow(
    name="credit_note",
    description="Store credit: issuance, approval, usage, hold and expiry",
    initial_state="draft",
    states=CREDIT_NOTE_STATES,
    transitions=CREDIT_NOTE_TRANSITIONS,
    # fully_used reopens when an application is reversed
    terminal_states=("cancelled",),
)

# Statuses expire_due sweeps.
EXPIRABLE_STATUSES = ("active", "partially_used", "on_hold")
