"""
payment_modules.refunds.workflows
=================================

Responsibility:
    Declarative state machines for refund requests and refund items, and
    the rule that derives a request's status from its items' outcomes.

Architecture:
    Module layer.  Pure data declarations plus one pure function.

Audit relevance:
    ``posts_entry=True`` marks the item transitions that write a negative
    ledger entry and its journal posting.
"""

from collections.abc import Iterable

from payment_kernel.domain.workflow import Guard, Transition, Workflow

from payment_modules.refunds.models import RefundItemStatus, RefundRequestStatus

# -----------------------------------------------------------------------------
# Request
# -----------------------------------------------------------------------------

REQUEST_STATES = tuple(s.value for s in RefundRequestStatus)

REQUEST_TRANSITIONS = (
    Transition("pending", "approved", action="approve"),
    Transition("pending", "rejected", action="reject"),
    Transition("pending", "cancelled", action="cancel"),
    Transition("approved", "cancelled", action="cancel"),
    Transition("approved", "processing", action="start_processing"),
    # Re-executing a failed item reopens a settled request.
    Transition("partially_completed", "processing", action="start_processing"),
    Transition("failed", "processing", action="start_processing"),
    Transition("processing", "completed", action="complete"),
    Transition("processing", "partially_completed", action="partially_complete"),
    Transition("processing", "failed", action="fail"),
    Transition("processing", "cancelled", action="cancel"),
    # cancel_item on the last failed item re-aggregates a settled request.
    Transition("partially_completed", "completed", action="complete"),
    Transition("failed", "cancelled", action="cancel"),
)

REFUND_REQUEST_WORKFLOW = Workflow(
    name="refund_request",
    description="Refund request: approval, processing and outcome aggregation",
    initial_state="pending",
    states=REQUEST_STATES,
    transitions=REQUEST_TRANSITIONS,
    terminal_states=("completed", "cancelled", "rejected"),
)

# -----------------------------------------------------------------------------
# Item
# -----------------------------------------------------------------------------

GATEWAY_ACCEPTED = Guard(
    name="gateway_accepted",
    description="The gateway reported the refund as successful",
)

ITEM_STATES = tuple(s.value for s in RefundItemStatus)

ITEM_TRANSITIONS = (
    Transition("pending", "processing", action="approve"),
    Transition("pending", "cancelled", action="cancel"),
    Transition("processing", "completed", action="execute", guard=GATEWAY_ACCEPTED, posts_entry=True),
    Transition("processing", "failed", action="execute"),
    Transition("processing", "cancelled", action="cancel"),
    Transition("failed", "completed", action="execute", guard=GATEWAY_ACCEPTED, posts_entry=True),
    Transition("failed", "failed", action="execute"),
    Transition("failed", "cancelled", action="cancel"),
)

REFUND_ITEM_WORKFLOW = Workflow(
    name="refund_item",
    description="One allocation of a refund against a prior payment",
    initial_state="pending",
    states=ITEM_STATES,
    transitions=ITEM_TRANSITIONS,
    terminal_states=("completed", "cancelled"),
)

# Items still holding part of a payment.  Completed items are counted
# through their refund ledger entries instead.
OPEN_RESERVING_ITEM_STATUSES = ("pending", "processing", "failed")


def aggregate_request_status(item_statuses: Iterable[str]) -> RefundRequestStatus | None:
    """
    Request status implied by its items, or None while any item is still
    pending or processing.

    All remaining items completed -> completed; all failed -> failed;
    completed and failed mixed -> partially_completed; every item
    cancelled -> cancelled.
    """
    remaining = [
        str(getattr(s, "value", s)) for s in item_statuses
        if str(getattr(s, "value", s)) != RefundItemStatus.CANCELLED.value
    ]
    if not remaining:
        return RefundRequestStatus.CANCELLED
    if any(s in (RefundItemStatus.PENDING.value, RefundItemStatus.PROCESSING.value) for s in remaining):
        return None
    if all(s == RefundItemStatus.COMPLETED.value for s in remaining):
        return RefundRequestStatus.COMPLETED
    if all(s == RefundItemStatus.FAILED.value for s in remaining):
        return RefundRequestStatus.FAILED
    return RefundRequestStatus.PARTIALLY_COMPLETED


AGGREGATE_ACTIONS = {
    RefundRequestStatus.COMPLETED: "complete",
    RefundRequestStatus.PARTIALLY_COMPLETED: "partially_complete",
    RefundRequestStatus.FAILED: "fail",
    RefundRequestStatus.CANCELLED: "cancel",
}
