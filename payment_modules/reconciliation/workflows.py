"""
payment_modules.reconciliation.workflows
========================================

Responsibility:
    Declarative state machine for reconciliation sessions.

Architecture:
    Module layer.  Pure data declarations.
"""

from payment_kernel.domain.workflow import Guard, Transition, Workflow

from payment_modules.reconciliation.models import ReconciliationStatus

BALANCED = Guard(
    name="balanced",
    description="No unmatched items and |closing difference| below tolerance",
)

RECONCILIATION_STATES = tuple(s.value for s in ReconciliationStatus)

RECONCILIATION_TRANSITIONS = (
    Transition("in_progress", "completed", action="complete", guard=BALANCED),
    Transition("in_progress", "discrepancy_found", action="complete"),
    Transition("discrepancy_found", "in_progress", action="reopen"),
)

RECONCILIATION_WORKFLOW = Workflow(
    name="reconciliation",
    description="Statement reconciliation session",
    initial_state="in_progress",
    states=RECONCILIATION_STATES,
    transitions=RECONCILIATION_TRANSITIONS,
    terminal_states=("completed",),
)
