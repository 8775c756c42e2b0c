"""
payment_modules.webhooks.workflows
==================================

Responsibility:
    Declarative state machines for payment transactions and guest
    checkout sessions.

Architecture:
    Module layer.  Pure data declarations.

Audit relevance:
    ``posts_entry=True`` marks the payment transition that completes the
    ledger entry and posts its journal transaction.
"""

from payment_kernel.domain.workflow import Transition, Workflow

from payment_modules.webhooks.models import GuestSessionStatus, PaymentTransactionStatus

PAYMENT_TRANSACTION_STATES = tuple(s.value for s in PaymentTransactionStatus)

# Events for a final payment never reopen it; see WebhookService.process.
PAYMENT_TRANSACTION_TRANSITIONS = (
    Transition("pending", "completed", action="complete", posts_entry=True),
    Transition("pending", "failed", action="fail"),
)

PAYMENT_TRANSACTION_WORKFLOW = Workflow(
    name="payment_transaction",
    description="Gateway payment confirmation",
    initial_state="pending",
    states=PAYMENT_TRANSACTION_STATES,
    transitions=PAYMENT_TRANSACTION_TRANSITIONS,
    terminal_states=("completed", "failed"),
)

GUEST_SESSION_STATES = tuple(s.value for s in GuestSessionStatus)

GUEST_SESSION_TRANSITIONS = (
    Transition("active", "completed", action="complete"),
    Transition("active", "expired", action="expire"),
)

GUEST_SESSION_WORKFLOW = Workflow(
    name="guest_checkout_session",
    description="Guest checkout held until the payment resolves",
    initial_state="active",
    states=GUEST_SESSION_STATES,
    transitions=GUEST_SESSION_TRANSITIONS,
    terminal_states=("completed", "expired"),
)
